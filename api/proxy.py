"""
Serverless entry point.

Hosting runtimes that map ``api/<name>.py`` to ``/api/<name>`` import this
module and look for a WSGI callable named ``app``.
"""
from hf_proxy.app import app

__all__ = ["app"]
