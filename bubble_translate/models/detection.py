"""
Internal detection record shared by the pipeline stages.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np


@dataclass(frozen=True)
class Box:
    """Axis-aligned box in source-image pixel coordinates."""
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def to_dict(self) -> dict:
        return {"x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass
class Detection:
    """
    One detected text region.

    Created by the decoder, filled in by the recognition and translation stages.
    """
    box: Box
    confidence: float
    class_index: int
    class_label: Optional[str] = None

    # Segmentation variant only
    coefficients: Optional[np.ndarray] = field(default=None, repr=False)
    mask: Optional[np.ndarray] = field(default=None, repr=False)  # uint8, cropped to box

    # Filled by the stages
    text: str = ""
    translated_text: str = ""
    font_size: Optional[float] = None
    line_boxes: List[Box] = field(default_factory=list)

    def to_payload(self, mask_encoder=None) -> dict:
        """
        Convert to the wire shape.

        Args:
            mask_encoder: Callable turning the mask array into a string (PNG data URL)

        Returns:
            dict with camelCase keys
        """
        payload = {
            "x1": self.box.x1,
            "y1": self.box.y1,
            "x2": self.box.x2,
            "y2": self.box.y2,
            "confidence": self.confidence,
            "classIndex": self.class_index,
            "classLabel": self.class_label,
            "text": self.text,
            "translatedText": self.translated_text,
            "fontSize": self.font_size,
        }
        if self.mask is not None and mask_encoder is not None:
            payload["mask"] = mask_encoder(self.mask)
        if self.line_boxes:
            payload["boxes"] = [b.to_dict() for b in self.line_boxes]
        return payload
