"""Platform user administration (listing, role and status changes)."""
