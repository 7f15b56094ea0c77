STATE_DIR_NAME = ".work_pipeline"
HOME_ENV_VAR = "WORK_PIPELINE_HOME"
CONFIG_FILE = "config.yaml"
STORE_FILE = "entities.yaml"
STORE_LOCK_FILE = "entities.lock"
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "pipeline_events.jsonl"
WINDOWS_LOCK_BYTES = 4096

CONFIG_VERSION = "3.0"
SUPPORTED_CONFIG_VERSIONS = {"3", "3.0"}

# Persisted form of the external-hold blocker.
NO_OP = "NO_OP"
# Shared terminal "will not be completed" state for every container kind.
EXIT_STATE = "WILL_NOT_IMPLEMENT"

PRIORITY_ORDER = {"HIGH": 1, "MEDIUM": 2, "LOW": 3}
DEFAULT_PRIORITY = "MEDIUM"
DEFAULT_COMPLEXITY = 5
