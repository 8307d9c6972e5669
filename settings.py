import os

from dotenv import load_dotenv

load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "school_management")
# Transactions need a replica set; standalone dev servers must set this to 0.
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "1") == "1"

PORT = int(os.getenv("PORT", 8000))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
