"""Owlverload inventory API: HTTP shell and idempotent mutation gateway."""

__version__ = "0.1.0"
