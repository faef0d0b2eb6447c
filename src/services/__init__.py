"""Infrastructure services for the alerting engine."""
