"""
Portal access layer.

This package contains:
- Entity model and completeness levels
- Lazily loaded entity values
- Error taxonomy
- Fetcher protocol, retry policy and the HTTP adapter
- Persistent session handling
"""

__version__ = "0.1.0"
