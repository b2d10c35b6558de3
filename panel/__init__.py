"""
StreamPanel core: the sync and notification bridge behind the admin panel.

Responsibilities:
- Mirror store writes to the live (Docker-hosted) backend
- Serve current-state reads live-first, falling back to the store
- Turn row changes into deduplicated operator notifications
- Track the single available release for the update agent
"""
