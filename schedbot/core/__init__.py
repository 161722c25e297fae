"""Core engine: config, cron scheduling, providers, channels."""
