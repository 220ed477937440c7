from typing import Any
from pydantic import ValidationError


class DisruptionETLError(Exception):
    """Base class for pipeline errors."""


class FetchError(DisruptionETLError):
    """Upstream data could not be fetched. Transient; the scheduler retries it."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(message if source is None else f"{source}: {message}")


class DisruptionNotFoundError(DisruptionETLError):
    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Disruption {external_id} not found or already resolved")


class InvalidGeohashError(DisruptionETLError, ValueError):
    def __init__(self, character: str, geohash: str):
        self.character = character
        self.geohash = geohash
        super().__init__(f"Invalid geohash character {character!r} in {geohash!r}")


class DataValidationError(DisruptionETLError):
    def __init__(self, source: str, errors: list[dict[str, Any]], original: ValidationError | None = None):
        self.source = source
        self.errors = errors
        self.original = original
        msg = f"Validation failed for {len(errors)} records from source '{source}'"

        super().__init__(msg)

    def summary(self, limit: int = 5) -> str:
        """Human-readable summary of the first few validation issues."""
        lines = []
        for err in self.errors[:limit]:
            loc = ".".join(str(p) for p in err.get("loc", []))
            lines.append(f"- {loc}: {err.get('msg')} ({err.get('type')})")
        if len(self.errors) > limit:
            lines.append(f"... ({len(self.errors) - limit} more)")
        return "\n".join(lines)
