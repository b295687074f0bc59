"""HTTP surface of the broker."""
