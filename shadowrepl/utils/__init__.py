"""
Utilities for shadowrepl
"""

from .retry import retry, RetryConfig, retry_on_connection_error
from .sql_builder import SQLBuilder, quote_identifier, qualified_name
from .logger import setup_logging, get_logger

__all__ = [
    'retry',
    'RetryConfig',
    'retry_on_connection_error',
    'SQLBuilder',
    'quote_identifier',
    'qualified_name',
    'setup_logging',
    'get_logger'
]
