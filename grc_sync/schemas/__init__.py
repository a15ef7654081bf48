"""Request and response models for the GRC Sync API."""
