"""Payment-to-infrastructure provisioning orchestrator."""
