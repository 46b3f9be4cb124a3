from typing import Literal

from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    db_path: str = "ironinsight.db"
    weight_unit: Literal["kg", "lbs"] = "kg"
    week_count: int = Field(default=8, ge=1, le=104)
    progress_points: int = Field(default=8, ge=1, le=52)
    top_exercise_limit: int = Field(default=5, ge=1, le=50)
    log_level: str = "INFO"
    json_logs: bool = False


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
