import os

"""Runtime settings, read from the environment once at import time.

Modules access these as ``pgbulk.config.<name>`` at call time so a
deployment (or a test) can override a single value.
"""

region = os.environ.get("PGBULK_REGION", "eu-central-1")

# Secrets Manager secret holding the database credentials record
secret_name = os.environ.get("PGBULK_SECRET_NAME", "")

# Hard wall-clock limit for a single COPY TO / COPY FROM
timeout_seconds = float(os.environ.get("PGBULK_TIMEOUT_SECONDS", "30"))

# Size of each read psycopg2 makes from the import source
copy_chunk_size = int(os.environ.get("PGBULK_COPY_CHUNK_SIZE", "8192"))

# Export payloads above this size spill from memory to a temp file
spool_max_bytes = int(
    os.environ.get("PGBULK_SPOOL_MAX_BYTES", str(8 * 1024 * 1024))
)

log_dir = os.environ.get("PGBULK_LOG_DIR", "log")

application_name = os.environ.get("PGBULK_APPLICATION_NAME", "pgbulk")

ssh_user = os.environ.get("PGBULK_SSH_USER", "ec2-user")
ssh_fingerprint = os.environ.get("PGBULK_SSH_FINGERPRINT", "")

# After a timeout, how long a cancelled COPY may take to return before
# its socket is shut down
cancel_grace_seconds = float(
    os.environ.get("PGBULK_CANCEL_GRACE_SECONDS", "5")
)
