"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowConfig(BaseSettings):
    """Case workflow engine configuration"""
    
    # Persistence
    database_url: str = "sqlite:///workflow.db"  # memory:// for in-memory storage
    
    # Report store (external report-management service)
    report_store_url: str = ""  # Empty = in-memory report store
    report_store_api_key: str = ""
    upstream_timeout_seconds: float = 5.0
    
    # SLA behaviour
    sla_warning_fraction: float = 0.8  # Share of the SLA window elapsed before "warning"
    enforce_sla_tier_order: bool = False
    
    # Escalation
    manual_escalation_dedupe_seconds: int = 60
    
    # Notifications
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout_seconds: float = 2.0
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    class Config:
        env_prefix = "WORKFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance, used by the HTTP entry point only
config = WorkflowConfig()


def get_config() -> WorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = WorkflowConfig()
    return config
