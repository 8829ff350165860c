"""Importing this package registers the payment tasks."""
from . import payments  # noqa: F401

__all__ = ["payments"]
