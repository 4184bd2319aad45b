"""
Shared slowapi limiter.

Lives outside main.py so route modules can decorate endpoints without a
circular import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
