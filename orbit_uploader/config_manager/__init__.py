"""Configuration resolution for the uploader."""
