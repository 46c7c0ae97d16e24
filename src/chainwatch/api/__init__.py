"""HTTP API for registrations and on-demand wallet checks."""
