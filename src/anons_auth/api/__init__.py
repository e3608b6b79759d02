"""API package for the Anons auth gateway."""
