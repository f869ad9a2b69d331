"""pydantic models of the REST surface."""
