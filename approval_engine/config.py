"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ApprovalEngineConfig(BaseSettings):
    """Approval engine configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///approval_engine.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    
    # Policy configuration
    base_currency: str = "ETB"
    policy_file: Optional[str] = None  # JSON policy override, loaded once at start
    
    # Audit configuration
    audit_max_entries: int = 5000  # Per category, oldest evicted first
    
    # Signature binding configuration
    hash_algorithm: str = "SHA-256"  # SHA-256, SHA-384, SHA-512, SHA3-256
    
    # Backend sync configuration
    backend_sync_url: str = ""  # Empty = record locally only
    backend_sync_timeout: float = 5.0
    backend_sync_api_key: str = ""
    sync_max_attempts: int = 3
    sync_backoff_base_seconds: float = 0.5
    sync_backoff_max_seconds: float = 30.0
    sync_worker_enabled: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Encryption configuration
    encryption_enabled: bool = False  # Must opt-in
    encryption_master_key: str = ""  # APPROVAL_ENCRYPTION_MASTER_KEY env var
    encryption_provider: str = "fernet"  # fernet, aesgcm, noop
    
    class Config:
        env_prefix = "APPROVAL_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ApprovalEngineConfig()


def get_config() -> ApprovalEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ApprovalEngineConfig:
    """Reload configuration from environment"""
    global config
    config = ApprovalEngineConfig()
    return config
