"""Constants for queue-based processing."""

# Textual timestamp format shared with the prediction process
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_TOPIC = "plate:predictions"

# Redis connection pool: wait up to this long for a free connection
REDIS_POOL_TIMEOUT = 5
