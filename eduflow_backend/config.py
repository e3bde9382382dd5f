import os
import json
import uuid

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "data"))


class Config:
    MONGO_URI = os.getenv("MONGO_URI", "")
    DATA_DIR = os.getenv("DATA_DIR") or DEFAULT_DATA_DIR
    JWT_SECRET = os.getenv("JWT_SECRET")
    JWT_EXPIRES_HOURS = int(os.getenv("JWT_EXPIRES_HOURS", "24"))
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CLIENT_URL = os.getenv("CLIENT_URL", "*")
    BLOCKCHAIN_PROVIDER = os.getenv("BLOCKCHAIN_PROVIDER", "mock")
    FISCO_NODE_URL = os.getenv("FISCO_NODE_URL", "http://localhost:8545")
    CHAIN_ACCOUNT = os.getenv("CHAIN_ACCOUNT")
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    BATCH_VERIFY_LIMIT = int(os.getenv("BATCH_VERIFY_LIMIT", "1000"))


def load_or_create_config(data_dir):
    """Read DATA_DIR/config.json, generating a JWT secret on first run."""
    os.makedirs(data_dir, exist_ok=True)
    config_file = os.path.join(data_dir, "config.json")
    config = {}
    if os.path.exists(config_file):
        with open(config_file, "r") as f:
            config = json.load(f)

    if "jwt_secret" not in config:
        config["jwt_secret"] = uuid.uuid4().hex + uuid.uuid4().hex
        with open(config_file, "w") as f:
            json.dump(config, f, indent=2)

    return config
