import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _parse_list(value: str) -> list[str]:
    """Parse comma-separated setting into a list of non-empty, stripped items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


# Package directory root (for the VERSION file)
PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Project being watched: the detector resolves WATCH_PATHS against this
PROJECT_ROOT = os.path.abspath(os.getenv("FAULTLINE_ROOT", os.getcwd()))

DATA_DIR = os.getenv("FAULTLINE_DATA_DIR", os.path.join(PROJECT_ROOT, ".faultline"))
DB_PATH = os.getenv("FAULTLINE_DB_PATH", os.path.join(DATA_DIR, "faultline.db"))
LOG_FILE = os.path.join(DATA_DIR, "faultline.log")

# Source tree boundary
WATCH_PATHS = _parse_list(os.getenv("WATCH_PATHS", "app,lib,components"))
WATCH_EXTENSIONS = tuple(_parse_list(os.getenv("WATCH_EXTENSIONS", ".ts,.tsx")))

# External analysis tools
TYPECHECK_CMD = os.getenv("TYPECHECK_CMD", "tsc --noEmit --pretty false")
TYPECHECK_CRITICAL_CODES = tuple(_parse_list(os.getenv("TYPECHECK_CRITICAL_CODES", "TS23,TS25")))
LINT_CMD = os.getenv("LINT_CMD", "eslint . --format json")
TOOL_TIMEOUT = float(os.getenv("TOOL_TIMEOUT", "30"))

# Background intervals (seconds)
DETECTION_INTERVAL = float(os.getenv("DETECTION_INTERVAL", "30"))
HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", "300"))
TUNING_INTERVAL = float(os.getenv("TUNING_INTERVAL", "3600"))

# Bounded histories
ERROR_LOG_LIMIT = 1000
METRICS_HISTORY_LIMIT = 1000
HEALTH_HISTORY_LIMIT = 100
RECOVERY_HISTORY_LIMIT = 1000

# Agents known at startup; more can register at runtime
DEFAULT_AGENT_IDS = [
    "system-bot",
    "quality-bot",
    "master-bot",
    "prompt-optimization-bot",
    "documentation-bot",
    "documentation-assistant",
    "marketing-text-bot",
    "marketing-text-assistant",
    "legal-bot",
    "legal-assistant",
    "mailing-text-bot",
    "mailing-text-assistant",
    "text-quality-bot",
    "text-quality-assistant",
    "code-assistant",
    "quality-assistant",
]
AGENT_IDS = _parse_list(os.getenv("AGENT_IDS", "")) or list(DEFAULT_AGENT_IDS)

# Recovery
STRATEGIES_FILE = os.getenv("STRATEGIES_FILE", "")
MAX_RETRY_WAIT = float(os.getenv("MAX_RETRY_WAIT", "60"))


def _get_version() -> str:
    version_file = os.path.join(PACKAGE_ROOT, "VERSION")
    try:
        with open(version_file, "r") as f:
            return f.read().strip()
    except FileNotFoundError:
        return "0.0.0"


VERSION = _get_version()


def setup_logging(level: int = logging.INFO) -> None:
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=level,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )
