"""Proxmox VE template creator."""

__version__ = "5.0.0"
