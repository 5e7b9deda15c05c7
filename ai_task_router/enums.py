from __future__ import annotations

from enum import Enum


class ProviderId(str, Enum):
    FAST_CLOUD = "fast-cloud"
    COST_EFFICIENT_CLOUD = "cost-efficient-cloud"
    LOCAL_DEVICE = "local-device"


class TaskType(str, Enum):
    CHAT = "chat"
    EMBEDDING = "embedding"
    CLASSIFICATION = "classification"
    IMAGE_GENERATION = "image-generation"
    OBJECT_DETECTION = "object-detection"
    CAPTIONING = "captioning"


class Priority(str, Enum):
    SPEED = "speed"
    COST = "cost"
    QUALITY = "quality"
    PRIVACY = "privacy"


class Variant(str, Enum):
    A = "a"
    B = "b"


class ExperimentState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    ENDED = "ended"


class AlertPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
