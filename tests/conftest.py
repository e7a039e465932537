import os

os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("FINANCE_TIMEZONE", "UTC")
