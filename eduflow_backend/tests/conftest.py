import json

import pytest

from eduflow_backend import create_app


@pytest.fixture
def app(tmp_path):
    """Create and configure a test Flask application instance."""
    flask_app = create_app({
        "TESTING": True,
        "MONGO_URI": "",  # Use JSON files for testing
        "DATA_DIR": str(tmp_path),
        "JWT_SECRET": "test-secret-key-for-eduflow-backend-tests",
        "ENVIRONMENT": "testing",
        "BLOCKCHAIN_PROVIDER": "mock",
    })
    yield flask_app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """A test CLI runner for the app."""
    return app.test_cli_runner()


@pytest.fixture
def store(app):
    return app.extensions["eduflow.store"]


@pytest.fixture
def chain(app):
    return app.extensions["eduflow.chain"]


def register(client, username, role, **extra):
    """Register a user and return ``(headers, user)``."""
    body = {
        "username": username,
        "email": f"{username}@example.com",
        "password": "testpass123",
        "role": role,
    }
    body.update(extra)
    response = client.post("/api/auth/register", data=json.dumps(body), content_type="application/json")
    assert response.status_code == 201, response.data
    data = json.loads(response.data)
    return {"Authorization": f"Bearer {data['token']}"}, data["user"]


@pytest.fixture
def school(client):
    return register(client, "tsinghua", "school", organization="Tsinghua University")


@pytest.fixture
def other_school(client):
    return register(client, "pku", "school", organization="Peking University")


@pytest.fixture
def student(client):
    return register(client, "zhangwei", "student", fullName="Zhang Wei")


@pytest.fixture
def enterprise(client):
    return register(client, "acme", "enterprise", organization="Acme Corp")


@pytest.fixture
def certificate_data(student):
    _, student_user = student
    return {
        "certificateNumber": "C100",
        "studentId": student_user["id"],
        "certificateType": "degree",
        "issueDate": "2024-07-01",
        "graduationDate": "2024-06-30",
        "major": "Computer Science",
        "degree": "Bachelor",
        "studentName": "Zhang Wei",
        "studentIdNumber": "2020010001",
    }


def post_json(client, url, body, headers=None):
    return client.post(url, data=json.dumps(body), content_type="application/json", headers=headers or {})


def put_json(client, url, body, headers=None):
    return client.put(url, data=json.dumps(body), content_type="application/json", headers=headers or {})


@pytest.fixture
def issued_certificate(client, school, certificate_data):
    """Create and issue certificate C100; returns the issued certificate."""
    headers, _ = school
    created = json.loads(post_json(client, "/api/certificates", certificate_data, headers).data)["data"]
    response = put_json(client, f"/api/certificates/{created['id']}/issue", {}, headers)
    assert response.status_code == 200, response.data
    return json.loads(response.data)["data"]["certificate"]
