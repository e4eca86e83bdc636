import os
from pathlib import Path

ENV: str = os.getenv("BUGFLOW_ENV", "dev")

# Database
if ENV == "test":
    DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
else:
    DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///bugflow.db"

DATABASE_URL: str = os.getenv("BUGFLOW_DATABASE_URL", DEFAULT_DATABASE_URL)
DB_ECHO: bool = os.getenv("BUGFLOW_DB_ECHO", "false").lower() == "true"

# Logging
LOG_LEVEL: str = os.getenv("BUGFLOW_LOG_LEVEL", "INFO").upper()

# Bundled workflow definitions
WORKFLOW_DIR: Path = Path(
    os.getenv("BUGFLOW_WORKFLOW_DIR", str(Path(__file__).parent / "workflows"))
)
AUTO_SEED: bool = os.getenv("BUGFLOW_AUTO_SEED", "true").lower() == "true"

# Upper bound on auto-check steps drained per adapter call
MAX_AUTO_STEPS: int = int(os.getenv("BUGFLOW_MAX_AUTO_STEPS", "20"))

BUG_ASSESSMENT_WORKFLOW = "Bug Assessment Workflow"
SYSTEM_USER = "System"
