"""Access-token scopes and the authoritative price catalog."""
