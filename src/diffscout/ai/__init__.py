"""Model client and analysis orchestration."""
