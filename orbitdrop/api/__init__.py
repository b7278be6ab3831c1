"""
API Module - HTTP control surface for an endpoint.
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
