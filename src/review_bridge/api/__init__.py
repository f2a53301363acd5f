"""HTTP surface: health and processing stats."""
