"""
Strava activities dataset (``strava_activities``).
"""

from typing import Any, Dict

from ingestion.transformers.base import DatasetSchema, first_of, format_timestamp, scaled
from ingestion.transformers.registry import register_schema

METADATA_FIELDS = (
    "description",
    "workout_type",
    "trainer",
    "commute",
    "manual",
    "device_name",
    "embed_token",
    "splits_metric",
    "splits_standard",
    "laps",
    "best_efforts",
    "segment_efforts",
)

M_TO_KM = "0.001"
MS_TO_KMH = "3.6"


@register_schema
class StravaDatasetSchema(DatasetSchema):
    source_name = "strava"
    dataset_name = "strava_activities"
    primary_keys = ["activity_id"]
    version = "1.0"

    def get_fields(self) -> Dict[str, Dict[str, str]]:
        return {
            "activity_id": {"type": "integer", "description": "Strava activity ID"},
            "activity_type": {"type": "string", "description": "Type of activity (Run, Ride, Swim, ...)"},
            "name": {"type": "string", "description": "Activity name"},
            "distance": {"type": "float", "description": "Distance in meters"},
            "distance_km": {"type": "float", "description": "Distance in kilometers"},
            "moving_time": {"type": "integer", "description": "Moving time in seconds"},
            "elapsed_time": {"type": "integer", "description": "Total elapsed time in seconds"},
            "total_elevation_gain": {"type": "float", "description": "Total elevation gain in meters"},
            "elevation_high": {"type": "float", "description": "Maximum elevation in meters"},
            "elevation_low": {"type": "float", "description": "Minimum elevation in meters"},
            "start_date": {"type": "datetime", "description": "Start date and time (ISO 8601)"},
            "start_date_local": {"type": "datetime", "description": "Start in the local timezone (ISO 8601)"},
            "timezone": {"type": "string", "description": "Timezone of the activity"},
            "athlete_id": {"type": "integer", "description": "Strava athlete ID"},
            "average_speed": {"type": "float", "description": "Average speed in meters per second"},
            "average_speed_kmh": {"type": "float", "description": "Average speed in kilometers per hour"},
            "max_speed": {"type": "float", "description": "Maximum speed in meters per second"},
            "average_cadence": {"type": "float", "description": "Average cadence"},
            "average_heartrate": {"type": "float", "description": "Average heart rate"},
            "max_heartrate": {"type": "float", "description": "Maximum heart rate"},
            "calories": {"type": "integer", "description": "Estimated calories burned"},
            "suffer_score": {"type": "integer", "description": "Suffer score"},
            "is_private": {"type": "boolean", "description": "Whether the activity is private"},
            "gear_id": {"type": "string", "description": "Gear used for the activity"},
            "metadata": {"type": "json", "description": "Additional activity metadata"},
        }

    def get_source_mapping(self) -> Dict[str, str]:
        return {
            "id": "activity_id",
            "type": "activity_type",
            "name": "name",
            "distance": "distance (meters)",
            "distance / 1000": "distance_km",
            "moving_time": "moving_time (seconds)",
            "elapsed_time": "elapsed_time (seconds)",
            "total_elevation_gain": "total_elevation_gain (meters)",
            "elevation_high": "elevation_high (meters)",
            "elevation_low": "elevation_low (meters)",
            "start_date": "start_date (ISO 8601)",
            "start_date_local": "start_date_local (ISO 8601)",
            "timezone": "timezone",
            "athlete.id": "athlete_id",
            "average_speed": "average_speed (m/s)",
            "average_speed * 3.6": "average_speed_kmh",
            "max_speed": "max_speed (m/s)",
            "average_cadence": "average_cadence",
            "average_heartrate": "average_heartrate",
            "max_heartrate": "max_heartrate",
            "calories": "calories",
            "suffer_score": "suffer_score",
            "private": "is_private",
            "gear_id": "gear_id",
        }

    def transform(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        distance = first_of(payload, "distance", default=0)
        average_speed = first_of(payload, "average_speed", default=0)

        return {
            "activity_id": payload.get("id"),
            "activity_type": first_of(payload, "type", default="Unknown"),
            "name": first_of(payload, "name", default=""),
            "distance": distance,
            "distance_km": scaled(distance, M_TO_KM),
            "moving_time": first_of(payload, "moving_time", default=0),
            "elapsed_time": first_of(payload, "elapsed_time", default=0),
            "total_elevation_gain": first_of(payload, "total_elevation_gain", default=0),
            "elevation_high": payload.get("elevation_high"),
            "elevation_low": payload.get("elevation_low"),
            "start_date": format_timestamp(payload.get("start_date")),
            "start_date_local": format_timestamp(payload.get("start_date_local")),
            "timezone": payload.get("timezone"),
            "athlete_id": first_of(payload, "athlete.id", "athlete_id"),
            "average_speed": average_speed,
            "average_speed_kmh": scaled(average_speed, MS_TO_KMH),
            "max_speed": payload.get("max_speed"),
            "average_cadence": payload.get("average_cadence"),
            "average_heartrate": payload.get("average_heartrate"),
            "max_heartrate": payload.get("max_heartrate"),
            "calories": payload.get("calories"),
            "suffer_score": payload.get("suffer_score"),
            "is_private": first_of(payload, "private", default=False),
            "gear_id": payload.get("gear_id"),
            "metadata": {
                field: payload[field] for field in METADATA_FIELDS if payload.get(field) is not None
            },
        }
