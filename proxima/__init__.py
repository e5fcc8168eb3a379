"""Manage VMs on a hypervisor node and run commands on their guests over SSH."""

__version__ = '0.1.0'
