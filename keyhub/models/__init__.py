"""ORM model exports."""

from keyhub.models.api_key import APIKey

__all__ = ["APIKey"]
