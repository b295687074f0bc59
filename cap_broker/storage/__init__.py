"""State storage backends."""
