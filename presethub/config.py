from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # GitHub
    github_token: str = ""
    github_repo_owner: str = "prolix-oc"
    github_repo_name: str = "ST-Presets"
    github_api_base: str = "https://api.github.com"
    github_graphql_url: str = "https://api.github.com/graphql"
    github_raw_base: str = "https://raw.githubusercontent.com"
    user_agent: str = "PresetHub/1.0"

    # Local mirror (serves content from disk instead of GitHub)
    use_local_mirror: bool = False
    mirror_root_path: str = "./data"

    # Persistent cache
    persistent_cache_dir: str = "./.cache"
    max_cache_size_mb: float = 100
    cache_eviction_fraction: float = 0.2
    default_cache_ttl_seconds: float = 3600

    # In-memory cache TTLs per resource kind, in seconds
    ttl_by_resource_kind: dict[str, float] = {
        "contents": 30,
        "commits": 300,
        "json": 3600,
        "tree": 3600,
        "thumbnail": 3600,
    }

    # Upstream fetching
    fetch_timeout_seconds: float = 15.0
    batch_concurrency: int = 5

    # Warm-up
    warmup_paths: list[str] = ["Character Cards", "World Books", "Chat Completion"]
    warmup_depth: int = 2
    warmup_on_startup: bool = True

    # Webhooks / admin
    webhook_secret: str = ""
    cache_admin_token: str = ""

    # Logging
    log_level: str = "info"

    def ttl_for(self, kind: str) -> float:
        return self.ttl_by_resource_kind.get(kind, self.default_cache_ttl_seconds)

    @property
    def max_cache_size_bytes(self) -> int:
        return int(self.max_cache_size_mb * 1024 * 1024)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
