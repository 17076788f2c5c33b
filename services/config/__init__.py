"""
Module Name: __init__.py
Description:
	Provide access to the configuration management service.
Location:
	/services/config/__init__.py

"""

from .management import ConfigService

__all__ = ["ConfigService"]
