"""Service layer shared by the API and the poller jobs."""
