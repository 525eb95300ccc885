"""
Image taggers.

A tagger turns image bytes into an ordered list of labels. The worker treats it
as an opaque, possibly slow and possibly failing collaborator.
"""

import io
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, ImageStat, UnidentifiedImageError

from storage_api.adapters.aws_clients import TRANSIENT_AWS_ERRORS, get_rekognition_client
from storage_api.errors import AnalysisFailed
from storage_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Reference colours for the dominant-colour tag
NAMED_COLOURS = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "gray": (128, 128, 128),
    "red": (200, 30, 30),
    "orange": (240, 140, 20),
    "yellow": (240, 220, 40),
    "green": (40, 160, 60),
    "blue": (40, 80, 200),
    "purple": (130, 50, 160),
    "pink": (240, 150, 190),
    "brown": (120, 75, 40),
}

GRAYSCALE_MODES = {"1", "L", "LA", "I", "I;16", "F"}


class BaseTagger(ABC):

    @abstractmethod
    def analyze(self, data: bytes) -> List[str]:
        """Return labels for the image. An empty list means nothing was detected."""


def nearest_colour_name(rgb: Tuple[float, float, float]) -> str:
    return min(
        NAMED_COLOURS,
        key=lambda name: sum((a - b) ** 2 for a, b in zip(NAMED_COLOURS[name], rgb)),
    )


class PillowTagger(BaseTagger):
    """Describes an image from its pixels alone, no cloud service needed."""

    def analyze(self, data: bytes) -> List[str]:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                return self._describe(image)
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise AnalysisFailed(f"Not a readable image: {e}") from e
        except (OSError, ValueError) as e:
            # Truncated or corrupt image data
            raise AnalysisFailed(f"Could not decode image: {e}") from e

    def _describe(self, image: Image.Image) -> List[str]:
        tags = []
        if image.format:
            tags.append(image.format.lower())

        width, height = image.size
        if width > height:
            tags.append("landscape")
        elif height > width:
            tags.append("portrait")
        else:
            tags.append("square")

        if image.mode in GRAYSCALE_MODES:
            tags.append("grayscale")
        if self._is_transparent(image):
            tags.append("transparent")

        rgb = image.convert("RGB")
        extrema = rgb.getextrema()
        if all(low == high for low, high in extrema):
            tags.append("blank")
        tags.append(nearest_colour_name(ImageStat.Stat(rgb).mean))
        return tags

    @staticmethod
    def _is_transparent(image: Image.Image) -> bool:
        if image.mode in ("RGBA", "LA", "PA"):
            low, _ = image.getchannel("A").getextrema()
            return low < 255
        return "transparency" in image.info


class RekognitionTagger(BaseTagger):
    """Labels images with AWS Rekognition DetectLabels."""

    def __init__(self, rekognition_client=None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.client = rekognition_client or get_rekognition_client(settings)
        self.max_labels = settings.rekognition_max_labels
        self.min_confidence = settings.rekognition_min_confidence

    def analyze(self, data: bytes) -> List[str]:
        try:
            response = self.client.detect_labels(
                Image={"Bytes": data},
                MaxLabels=self.max_labels,
                MinConfidence=self.min_confidence,
            )
        except TRANSIENT_AWS_ERRORS as e:
            raise AnalysisFailed(f"Rekognition timed out: {e}", retryable=True) from e
        except (ClientError, BotoCoreError) as e:
            raise AnalysisFailed(f"Rekognition rejected the image: {e}") from e

        labels = [label["Name"] for label in response.get("Labels", [])]
        logger.debug("Rekognition returned %d labels", len(labels))
        return labels


class TaggerFactory:
    """Factory to pick the tagger for the configured backend"""

    @staticmethod
    def get_tagger(settings: Optional[Settings] = None) -> BaseTagger:
        settings = settings or get_settings()
        backend = settings.resolved_tagger_backend
        logger.info("Using %s tagger", backend)
        if backend == "rekognition":
            return RekognitionTagger(settings=settings)
        return PillowTagger()
