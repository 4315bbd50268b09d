from .link import MavlinkVehicleLink

__all__ = ["MavlinkVehicleLink"]
