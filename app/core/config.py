from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_name: str = "node-release-controller"
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    database_url: str = "sqlite:///./controller.db"
    redis_url: str = "redis://localhost:6379/0"

    # Public base URL the bootstrap script calls back into.
    callback_base_url: str = "http://localhost:8080"

    handshake_timeout_seconds: int = 300
    handshake_poll_interval: float = 0.5

    source_timeout_seconds: int = 300
    source_max_retries: int = 3
    source_retry_delay: float = 2.0
    build_timeout_seconds: int = 1800
    # e.g. "docker"; empty runs build commands on the worker host.
    build_container_runtime: str = ""
    deploy_timeout_seconds: int = 900
    deploy_ack_timeout_seconds: int = 600
    deploy_ack_poll_interval: float = 2.0
    source_poll_interval_seconds: int = 60

    node_liveness_seconds: int = 120
    node_heartbeat_interval_seconds: int = 30

    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    github_web_base: str = "https://github.com"

    artifacts_dir: str = "/data/artifacts"
    workspaces_dir: str = "/data/workspaces"
    pipeline_file: str = "pipeline.yml"

settings = Settings()
