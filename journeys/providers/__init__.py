from journeys.providers.clips import ClipProvider, FalClipProvider
from journeys.providers.fal import FalClient
from journeys.providers.images import FalImageProvider, GeminiImageProvider, ImageProvider
from journeys.providers.speech import ElevenLabsProvider, SpeechifyProvider, SpeechProvider

__all__ = [
    "ClipProvider",
    "ElevenLabsProvider",
    "FalClient",
    "FalClipProvider",
    "FalImageProvider",
    "GeminiImageProvider",
    "ImageProvider",
    "SpeechProvider",
    "SpeechifyProvider",
]
