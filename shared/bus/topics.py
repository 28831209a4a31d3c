"""Topic name constants for the message bus.

All services should use these constants rather than hardcoded strings
to ensure consistency across the system.
"""


class Topics:
    """Message bus topic names."""

    # Sensor input (published by the scanner driver / odometry)
    SENSOR_POINTS = "sensor.points"
    SENSOR_POSE = "sensor.pose"

    # Fusion output (published by the Fusion service)
    MAP_MESH = "map.mesh"
    MAP_EXPORTED = "map.exported"

    @classmethod
    def sensor_points(cls, source_id: str) -> str:
        """Topic for a specific scanner's point clouds."""
        return f"{cls.SENSOR_POINTS}.{source_id}"
