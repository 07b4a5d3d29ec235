import os

LOGGER_NAME = "invoker"
LOG_FILE = os.environ.get("INVOKER_LOG_FILE", "error.log")
LOG_TO_CONSOLE = os.environ.get("INVOKER_LOG_TO_CONSOLE", "").lower() in ("1", "true", "yes")

# Seconds
DEFAULT_TIMEOUT = float(os.environ.get("INVOKER_TIMEOUT", "60"))
CONNECT_TIMEOUT = float(os.environ.get("INVOKER_CONNECT_TIMEOUT", "10"))

STREAM_QUEUE_CAPACITY = int(os.environ.get("INVOKER_STREAM_CAPACITY", "100"))

REFLECTION_SERVICE_PREFIX = "grpc.reflection."

# Longest chain of missing imports followed while loading reflected files
MAX_DEPENDENCY_PASSES = 50
