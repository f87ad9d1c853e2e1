import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    workout_type_other_id: int = 1
    created_job_type: str = "usr_workout.created"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=(
                os.environ.get("WORKOUT_LISTEN_DATABASE_URL") or database_url
            ),
            poll_interval_seconds=float(os.environ.get("WORKOUT_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("WORKOUT_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("WORKOUT_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("WORKOUT_HEALTH_PORT", "8081")),
            log_format=os.environ.get("WORKOUT_LOG_FORMAT", "json"),
            workout_type_other_id=int(os.environ.get("WORKOUT_TYPE_OTHER_ID", "1")),
            created_job_type=os.environ.get(
                "WORKOUT_CREATED_JOB_TYPE", "usr_workout.created"
            ),
        )
