"""Background work primitives."""
