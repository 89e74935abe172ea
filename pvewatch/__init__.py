"""pvewatch - Proxmox VE cluster monitor with a live event stream."""

__version__ = "1.0.0"
