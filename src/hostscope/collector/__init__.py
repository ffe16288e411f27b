"""System and per-process metric collection."""
