"""
Change detection for tracked portal collections.

This package contains:
- Change event models
- Identity normalization and fingerprinting
- Baseline snapshots
- Change detection engine
- Alerting and registration period announcements
- Command surface (PortalService)
"""
