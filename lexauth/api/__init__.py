"""API routers."""

from lexauth.api import auth

__all__ = ["auth"]
