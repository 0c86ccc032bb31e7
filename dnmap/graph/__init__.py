"""Graph model, selector matching and graph construction."""

__all__ = ["builder", "model", "selectors"]