"""Shared plumbing for PartySync services (config, systemd watchdog)."""
