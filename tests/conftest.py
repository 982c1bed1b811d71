import os

# Lightweight DB setup; tests build their own in-memory engines.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("AUTO_RUN_MIGRATIONS", "false")
os.environ.setdefault("JOBFLOW_AUTH_DISABLED", "true")
os.environ.setdefault("JOBFLOW_ENV", "dev")
