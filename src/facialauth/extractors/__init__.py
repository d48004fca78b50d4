"""
Descriptor extractors.

Adapters over external face detection and feature extraction libraries:
- face_recognition (dlib-based, CPU-optimized)
- insightface (deep learning, more accurate)
"""

from facialauth.extractors.factory import DescriptorExtractor, create_extractor

__all__ = [
    "DescriptorExtractor",
    "create_extractor",
]
