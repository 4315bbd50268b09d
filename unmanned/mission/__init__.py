from .mission_loader import load_missions, load_qgc_plan, mission_from_config

__all__ = ["load_missions", "mission_from_config", "load_qgc_plan"]
