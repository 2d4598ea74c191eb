import os


class Config:
    """Reads tally configuration from environment variables."""

    def __init__(self):
        self.node_id = os.getenv("NODE_ID", "tally-1")
        self.http_port = int(os.getenv("HTTP_PORT", "3000"))
        self.app_env = os.getenv("APP_ENV", "development").strip().lower()
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # "memory" keeps everything in-process, "sqlite" persists under DATA_DIR
        self.store_backend = os.getenv("STORE_BACKEND", "memory").strip().lower()
        self.data_dir = os.getenv("DATA_DIR", "/data")
        self.store_poll_interval = max(float(os.getenv("STORE_POLL_INTERVAL", "1")), 0.05)

        # "arrival" = whatever the store applies last wins
        # "timestamp" = newest updatedAt wins, writer id breaks ties
        self.write_policy = os.getenv("WRITE_POLICY", "arrival").strip().lower()

        self.reconnect_backoff = max(float(os.getenv("RECONNECT_BACKOFF", "3")), 0.0)
        self.special_duration = max(float(os.getenv("SPECIAL_DURATION", "10")), 0.0)
        self.unchanged_window = max(float(os.getenv("UNCHANGED_WINDOW", "5")), 0.0)
        self.history_window = max(int(os.getenv("HISTORY_WINDOW", "20")), 1)

        # ws://host:port/ws of the relay a viewer connects to
        self.relay_url = os.getenv("RELAY_URL", f"ws://localhost:{self.http_port}/ws")

    @property
    def is_production(self):
        return self.app_env == "production"

    @property
    def sqlite_path(self):
        return f"{self.data_dir}/tally.db"


config = Config()
