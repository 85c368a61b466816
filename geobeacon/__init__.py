"""geobeacon: background location telemetry agent.

Publishes the device position to one Firestore document per anonymous
identity, driven by a foreground service timer and an OS periodic job.
"""

__version__ = "0.1.0"
