"""
Backup name generators.

A name identifies a backup in the index, names its working directory and
determines its archive filename, so it is restricted to filename-safe
characters.
"""

import uuid
import secrets
from datetime import datetime


def sanitize_name_part(value: str) -> str:
    """Replace anything outside [A-Za-z0-9_-] with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in value
    )


class NameGenerator:
    """Produces a new, very probably unused, backup name."""

    identifier = None

    def generate(self) -> str:
        raise NotImplementedError


class TimestampNameGenerator(NameGenerator):
    """
    Format: {prefix}-{YYYYmmdd-HHMMSS}-{6 hex chars}

    The random suffix keeps two backups started in the same second apart.
    """

    identifier = 'timestamp'

    def __init__(self, prefix: str = 'backup'):
        self.prefix = sanitize_name_part(prefix) if prefix else ''

    def generate(self) -> str:
        timestamp = datetime.utcnow().strftime('%Y%m%d-%H%M%S')
        token = secrets.token_hex(3)

        if self.prefix:
            return f"{self.prefix}-{timestamp}-{token}"
        return f"{timestamp}-{token}"


class UuidNameGenerator(NameGenerator):
    identifier = 'uuid'

    def __init__(self, prefix: str = ''):
        self.prefix = sanitize_name_part(prefix) if prefix else ''

    def generate(self) -> str:
        if self.prefix:
            return f"{self.prefix}-{uuid.uuid4().hex}"
        return uuid.uuid4().hex


NAME_GENERATORS = {
    TimestampNameGenerator.identifier: TimestampNameGenerator,
    UuidNameGenerator.identifier: UuidNameGenerator,
}


def create_name_generator(identifier: str, **options) -> NameGenerator:
    """
    Factory function to create a name generator.

    Args:
        identifier: 'timestamp' or 'uuid'
        **options: Passed to the generator constructor (e.g. prefix)

    Raises:
        ValueError: If identifier is unknown
    """
    if identifier not in NAME_GENERATORS:
        raise ValueError(
            f"Invalid name generator: {identifier}. "
            f"Valid options: {list(NAME_GENERATORS.keys())}"
        )
    return NAME_GENERATORS[identifier](**options)
