"""
Idempotent installation and removal of the Lust daemon as a systemd service.
"""
