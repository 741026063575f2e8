"""Configuration for the wallet monitor."""
