"""Shadow store, sync engine and triage queue for the legacy casework API."""
