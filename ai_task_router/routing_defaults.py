from __future__ import annotations

from copy import deepcopy
from typing import Any

ON_DEVICE_MIN_SUCCESS_RATE = 0.95

DEFAULT_PROVIDERS: dict[str, Any] = {
    "fast-cloud": {"success_rate": 0.95, "avg_latency_ms": 1200.0},
    "cost-efficient-cloud": {"success_rate": 0.92, "avg_latency_ms": 2500.0},
    "local-device": {"success_rate": 0.98, "avg_latency_ms": 800.0},
}

_ON_DEVICE_GUARD = {"min_success_rate": ON_DEVICE_MIN_SUCCESS_RATE}

DEFAULT_TASK_POLICIES: dict[str, Any] = {
    "chat": {
        "candidates": [
            {
                "provider": "fast-cloud",
                "model": "google/gemini-2.5-flash",
                "estimated_cost": 0.0002,
                "reason": "Default chat provider",
            },
            {
                "provider": "cost-efficient-cloud",
                "model": "meta-llama/Llama-3.2-3B-Instruct",
                "estimated_cost": 0.0001,
                "latency_ms": 2500.0,
                "reason": "Cost-effective generation",
            },
        ],
        "priorities": {
            "speed": [
                {
                    "provider": "fast-cloud",
                    "model": "google/gemini-2.5-flash",
                    "estimated_cost": 0.0002,
                    "reason": "Fastest API response for chat",
                    "when": {"max_avg_latency_ms": 1500.0},
                }
            ],
            "cost": [
                {
                    "provider": "cost-efficient-cloud",
                    "model": "meta-llama/Llama-3.2-3B-Instruct",
                    "estimated_cost": 0.0,
                    "reason": "Free tier available",
                    "when": {"unauthenticated_only": True},
                }
            ],
            "quality": [
                {
                    "provider": "fast-cloud",
                    "model": "google/gemini-2.5-pro",
                    "estimated_cost": 0.0005,
                    "latency_ms": 1800.0,
                    "reason": "Highest quality responses",
                }
            ],
        },
        "default": {
            "provider": "fast-cloud",
            "model": "google/gemini-2.5-flash",
            "estimated_cost": 0.0002,
            "reason": "Default chat provider",
        },
    },
    "embedding": {
        "candidates": [
            {
                "provider": "local-device",
                "model": "mixedbread-ai/mxbai-embed-xsmall-v1",
                "estimated_cost": 0.0,
                "reason": "Free and private on-device processing",
            },
            {
                "provider": "cost-efficient-cloud",
                "model": "sentence-transformers/all-MiniLM-L6-v2",
                "estimated_cost": 0.0001,
                "latency_ms": 1500.0,
                "reason": "Reliable server-side embeddings",
            },
            {
                "provider": "fast-cloud",
                "model": "google/text-embedding-004",
                "estimated_cost": 0.0002,
                "reason": "Hosted gateway embeddings",
            },
        ],
        "priorities": {
            "privacy": [
                {
                    "provider": "local-device",
                    "model": "mixedbread-ai/mxbai-embed-xsmall-v1",
                    "estimated_cost": 0.0,
                    "reason": "Free and private on-device processing",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "cost": [
                {
                    "provider": "local-device",
                    "model": "mixedbread-ai/mxbai-embed-xsmall-v1",
                    "estimated_cost": 0.0,
                    "reason": "Free and private on-device processing",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "speed": [
                {
                    "provider": "local-device",
                    "model": "mixedbread-ai/mxbai-embed-xsmall-v1",
                    "estimated_cost": 0.0,
                    "reason": "Fastest with on-device acceleration",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "quality": [
                {
                    "provider": "local-device",
                    "model": "mixedbread-ai/mxbai-embed-xsmall-v1",
                    "estimated_cost": 0.0,
                    "reason": "Optimal for embeddings",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
        },
        "default": {
            "provider": "cost-efficient-cloud",
            "model": "sentence-transformers/all-MiniLM-L6-v2",
            "estimated_cost": 0.0001,
            "latency_ms": 1500.0,
            "reason": "Reliable server-side embeddings",
        },
    },
    "classification": {
        "candidates": [
            {
                "provider": "local-device",
                "model": "Xenova/distilbert-base-uncased-finetuned-sst-2-english",
                "estimated_cost": 0.0,
                "reason": "Fast on-device classification",
            },
            {
                "provider": "cost-efficient-cloud",
                "model": "facebook/bart-large-mnli",
                "estimated_cost": 0.0001,
                "latency_ms": 1800.0,
                "reason": "High-quality classification",
            },
            {
                "provider": "fast-cloud",
                "model": "google/gemini-2.5-flash-lite",
                "estimated_cost": 0.0002,
                "reason": "Hosted gateway classification",
            },
        ],
        "priorities": {
            "privacy": [
                {
                    "provider": "local-device",
                    "model": "Xenova/distilbert-base-uncased-finetuned-sst-2-english",
                    "estimated_cost": 0.0,
                    "reason": "Free and private",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "cost": [
                {
                    "provider": "local-device",
                    "model": "Xenova/distilbert-base-uncased-finetuned-sst-2-english",
                    "estimated_cost": 0.0,
                    "reason": "Free and private",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "speed": [
                {
                    "provider": "local-device",
                    "model": "Xenova/distilbert-base-uncased-finetuned-sst-2-english",
                    "estimated_cost": 0.0,
                    "reason": "Fast on-device classification",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
            "quality": [
                {
                    "provider": "local-device",
                    "model": "Xenova/distilbert-base-uncased-finetuned-sst-2-english",
                    "estimated_cost": 0.0,
                    "reason": "Fast on-device classification",
                    "when": _ON_DEVICE_GUARD,
                }
            ],
        },
        "default": {
            "provider": "cost-efficient-cloud",
            "model": "facebook/bart-large-mnli",
            "estimated_cost": 0.0001,
            "latency_ms": 1800.0,
            "reason": "High-quality classification",
        },
    },
    "image-generation": {
        "candidates": [
            {
                "provider": "cost-efficient-cloud",
                "model": "black-forest-labs/FLUX.1-schnell",
                "estimated_cost": 0.001,
                "latency_ms": 2000.0,
                "reason": "Fast and cost-effective images",
            },
            {
                "provider": "fast-cloud",
                "model": "google/gemini-2.5-flash-image",
                "estimated_cost": 0.004,
                "latency_ms": 3000.0,
                "reason": "Highest quality image generation",
            },
        ],
        "priorities": {
            "quality": [
                {
                    "provider": "fast-cloud",
                    "model": "google/gemini-2.5-flash-image",
                    "estimated_cost": 0.004,
                    "latency_ms": 3000.0,
                    "reason": "Highest quality image generation",
                }
            ],
            "speed": [
                {
                    "provider": "cost-efficient-cloud",
                    "model": "black-forest-labs/FLUX.1-schnell",
                    "estimated_cost": 0.001,
                    "latency_ms": 2000.0,
                    "reason": "Fast and cost-effective",
                }
            ],
        },
        "default": {
            "provider": "cost-efficient-cloud",
            "model": "black-forest-labs/FLUX.1-schnell",
            "estimated_cost": 0.001,
            "latency_ms": 2000.0,
            "reason": "Default image generation",
        },
    },
    "object-detection": {
        "candidates": [
            {
                "provider": "local-device",
                "model": "Xenova/detr-resnet-50",
                "estimated_cost": 0.0,
                "latency_multiplier": 2.0,
                "reason": "Only available on-device",
            }
        ],
    },
    "captioning": {
        "candidates": [
            {
                "provider": "local-device",
                "model": "Xenova/vit-gpt2-image-captioning",
                "estimated_cost": 0.0,
                "latency_multiplier": 2.0,
                "reason": "Optimized for on-device captioning",
            }
        ],
    },
}


def default_routing_document() -> dict[str, Any]:
    return {
        "providers": deepcopy(DEFAULT_PROVIDERS),
        "tasks": deepcopy(DEFAULT_TASK_POLICIES),
    }
