"""
Hosting Bridge
==============

Payment-to-provisioning bridge: Stripe checkout in, Pterodactyl instances out.
"""

__version__ = "2.0.0"
