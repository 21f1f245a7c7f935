"""Settings base classes shared between services."""
