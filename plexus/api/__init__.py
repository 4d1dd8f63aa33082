"""HTTP layer of Plexus."""
