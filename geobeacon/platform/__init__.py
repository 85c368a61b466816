"""OS collaborators for geobeacon.

Modules:
    termux        — Async runner for Termux:API shell commands
    permissions   — Permission Gate and capability backends
    notifications — Notification channel registration and foreground notification
"""
