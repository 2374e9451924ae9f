"""HTTP surface of the correlation core."""
