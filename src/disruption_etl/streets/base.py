"""
Abstract base classes for street name handling.
"""

from abc import ABC, abstractmethod
from typing import List


class Normalizer(ABC):
    """
    Abstract base for string normalizers.

    Normalizers transform input strings into the form used by the
    reference data (e.g., "Bloor Street West" → "bloor st w").
    """

    @abstractmethod
    def normalize(self, value: str) -> str:
        """
        Normalize a string value.

        Args:
            value: String to normalize

        Returns:
            Normalized string
        """
        pass

    def normalize_batch(self, values: List[str]) -> List[str]:
        """
        Normalize multiple values. Default implementation calls normalize()
        for each value, but subclasses can override for efficiency.
        """
        return [self.normalize(v) for v in values]
