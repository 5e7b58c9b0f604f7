"""Matchers biométricos intercambiables"""
from abc import ABC, abstractmethod
from difflib import SequenceMatcher


class Matcher(ABC):
    """Compara una muestra contra la plantilla de referencia."""

    @abstractmethod
    async def match(self, sample: bytes, reference: bytes) -> float:
        """Devuelve la confianza en [0, 1]."""
        ...


class SequenceSimilarityMatcher(Matcher):
    """
    Matcher de referencia: similitud de secuencias sobre las plantillas.

    No es un algoritmo biométrico real; en producción se inyecta el matcher
    del proveedor (SDK facial, huella, etc.).
    """

    async def match(self, sample: bytes, reference: bytes) -> float:
        if not sample or not reference:
            return 0.0
        if sample == reference:
            return 1.0
        return SequenceMatcher(None, sample, reference, autojunk=False).ratio()
