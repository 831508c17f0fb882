"""config/ — ClawDesk settings."""
