import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Ensure .env from project root is loaded even if CWD differs; a missing file is fine
_BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
load_dotenv(os.path.join(_BASE_DIR, ".env"))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    enable_request_id_logging: bool = _env_bool("ENABLE_REQUEST_ID_LOGGING", "true")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Footprint resolution
    overhang_ft: float = float(os.getenv("ROOF_OVERHANG_FT", "2.0"))
    footprint_min_sqft: float = float(os.getenv("FOOTPRINT_MIN_SQFT", "500"))
    footprint_max_sqft: float = float(os.getenv("FOOTPRINT_MAX_SQFT", "50000"))

    # Polygon simplification applied to automated footprints
    simplify_tolerance_ft: float = float(os.getenv("SIMPLIFY_TOLERANCE_FT", "1.0"))
    simplify_snap_angles: bool = _env_bool("SIMPLIFY_SNAP_ANGLES", "true")
    simplify_angle_threshold_deg: float = float(os.getenv("SIMPLIFY_ANGLE_THRESHOLD_DEG", "10"))

    # Linear features
    min_linear_feature_ft: float = float(os.getenv("MIN_LINEAR_FEATURE_FT", "3"))
    segment_adjacency_tolerance_m: float = float(os.getenv("SEGMENT_ADJACENCY_TOLERANCE_M", "5.5"))
    # azimuth | slope_aware
    edge_classifier: str = os.getenv("EDGE_CLASSIFIER", "azimuth")

    # Confidence scoring: imagery below this quality costs points
    min_imagery_quality: str = os.getenv("MIN_IMAGERY_QUALITY", "medium")


def get_settings() -> Settings:
    return Settings()
