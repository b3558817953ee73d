"""Provider gateway, session state and supporting services."""
