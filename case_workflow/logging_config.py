"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for workflow engine operations.
Diagnostic logging only; the audit record of engine decisions is the Workflow Log.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""
    
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
            "report_id": getattr(record, 'report_id', None),
            "organization_id": getattr(record, 'organization_id', None),
            "action": getattr(record, 'action', None),
            "extra": getattr(record, 'extra_data', None)
        }
        
        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}
        
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
            
        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "case_workflow",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the workflow engine.
    
    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, "text" for plain lines
        logger_name: Name of the root logger for the package
        log_file: Optional file path; stdout when omitted
        
    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    
    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    
    return logger


def get_logger(name: str = "case_workflow") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               report_id: Optional[str] = None, organization_id: Optional[str] = None,
               action: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log an engine action with structured context fields.
    
    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        report_id: Report the action concerns
        organization_id: Owning organization
        action: Engine action or workflow log action name
        extra: Additional structured data
    """
    fields = {}
    if report_id:
        fields['report_id'] = report_id
    if organization_id:
        fields['organization_id'] = organization_id
    if action:
        fields['action'] = action
    if extra:
        fields['extra_data'] = extra
    
    logger.log(getattr(logging, level.upper()), message, extra=fields)
