"""Collector configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Collector settings loaded from environment variables."""

    # Session engine timings (seconds)
    step_timeout: float = 30.0  # Idle bound per step, measured from the last received byte
    read_poll_interval: float = 0.1
    terminate_timeout: float = 5.0
    session_deadline: float = 0.0  # 0 = no overall deadline

    # Channel I/O
    read_chunk_size: int = 4096

    # Concurrency limits
    max_concurrent_sessions: int = 8

    # OpenSSH transport
    ssh_binary: str = "ssh"
    ssh_connect_timeout: int = 10
    ssh_strict_host_key_checking: str = "accept-new"

    # Batch runs
    devices_file: str = "devices.json"
    state_dir: str = "configs"
    protocols_file: str = ""  # Optional JSON file with extra vendor protocols

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    class Config:
        env_prefix = "SHELLCAP_"


settings = Settings()
