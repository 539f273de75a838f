"""Easy Genomics laboratory-run status reconciliation."""

__all__: list[str] = []
