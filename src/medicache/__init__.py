"""
MediCare offline cache router.

Offline-first request routing for the MediCare application shell: a
versioned response cache, cache-first / network-first strategies, the
install/activate worker lifecycle, and push notification handling.
"""

__version__ = "0.2.0"
