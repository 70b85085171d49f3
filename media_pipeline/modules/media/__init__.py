"""Media module for asset uploads, storage keys and renditions."""
