import os

from pydantic import BaseModel

ENV_PREFIX = "ATTENDANCE_"


class Settings(BaseModel):
    embedding_threshold: float = 0.38  # cosine distance threshold (lower is closer)
    liveness_required: bool = True
    min_detection_score: float = 0.6
    data_dir: str = "data"
    face_thumb_dir: str = "data/faces"
    db_path: str = "data/attendance.db"
    log_path: str = "data/app.log"
    log_level: str = "INFO"
    capture_interval: float = 0.2  # seconds between ticks, ~5 fps
    camera_index: int = 0
    session_max_hours: float = 4.0

    @classmethod
    def from_env(cls) -> "Settings":
        overrides = {}
        for name in cls.model_fields:
            value = os.environ.get(ENV_PREFIX + name.upper())
            if value is not None:
                overrides[name] = value
        return cls(**overrides)


settings = Settings.from_env()
