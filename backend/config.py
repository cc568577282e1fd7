"""Application configuration."""

from pydantic import BaseModel


class Settings(BaseModel):
    """Application settings."""

    app_name: str = "Recipe Flow API"
    app_version: str = "0.1.0"
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]
    api_prefix: str = "/api"

    # Scheduler settings
    default_step_duration: int = 1
    dependency_fallback_duration: int = 10
    iteration_factor: int = 2

    # Segment layout settings
    target_edge_length: float = 120
    initial_y: float = 80
    lane_width: float = 300
    lane_gap: float = 64
    start_x: float = 150
    default_node_width: float = 200
    default_node_height: float = 120
    extraction_min_edge_length: float = 70
    extraction_scale: float = 1.0
    convergence_strategy: str = "max"

    # Layout controller settings
    layout_tolerance: float = 5
    layout_max_iterations: int = 3
    measurement_retries: int = 5
    layout_timeout_seconds: float = 3.0
    fit_view_padding: float = 0.2


settings = Settings()
