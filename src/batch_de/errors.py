"""Exceptions raised by batch_de.

Failures from collaborators (HTTP errors from BioMart, missing kallisto
output files) are not wrapped; they propagate as raised.
"""

from typing import Iterable, List, Optional


class BatchDEError(Exception):
    """Base class for errors raised by this package."""


class MalformedInputError(BatchDEError, ValueError):
    """A metadata file or row could not be turned into a sample record."""

    def __init__(
        self,
        message: str,
        row: Optional[int] = None,
        value: Optional[str] = None,
    ) -> None:
        self.row = row
        self.value = value
        if row is not None:
            message = f"row {row}: {message}"
        super().__init__(message)


class UnmatchedGeneError(BatchDEError):
    """Genes present in only one of two joined result tables."""

    def __init__(self, gene_ids: Iterable[str]) -> None:
        self.gene_ids: List[str] = list(gene_ids)
        preview = ", ".join(self.gene_ids[:5])
        if len(self.gene_ids) > 5:
            preview += ", ..."
        super().__init__(
            f"{len(self.gene_ids)} gene(s) have no counterpart in the other table: {preview}"
        )


class ModelNotFoundError(BatchDEError, KeyError):
    """A model or test name was not found in the analysis context."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class InvalidTestError(BatchDEError, ValueError):
    """A requested statistical test cannot be run on the given models."""
