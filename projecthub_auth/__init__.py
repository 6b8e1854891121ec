"""
ProjectHub account security core: authentication, MFA, sessions, brute-force
protection and audit logging behind a Flask API.
"""

from .app import create_app

__version__ = '1.0.0'

__all__ = ['create_app', '__version__']
