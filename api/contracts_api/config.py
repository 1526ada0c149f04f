import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./contracts.db")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
WEBHOOK_EXECUTION_MODE = os.getenv("WEBHOOK_EXECUTION_MODE", "production")
NAME_MATCH_THRESHOLD = float(os.getenv("NAME_MATCH_THRESHOLD", "0.85"))
