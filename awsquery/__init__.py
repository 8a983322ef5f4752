"""Clients for ELB and Mechanical Turk, request signing, and an EC2 simulator."""

__version__ = "0.1.0"