"""Real-time messaging backend.

Presence, direct and group messaging, delivery/read tracking, missed-message
replay and typing indicators over WebSockets.
"""
