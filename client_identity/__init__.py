"""Client identity resolution and merge service."""
