"""Payment gateway client, webhook handling and reconciliation."""
