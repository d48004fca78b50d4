"""
Face recognizers.

Provides a unified interface over two families of matchers:
- classic (LBPH, Eigenfaces, Fisherfaces): distance on grayscale crops
- embedding: cosine similarity on deep-feature embeddings
"""

from facialauth.recognition.base import MatchDecision, Recognizer, Sample
from facialauth.recognition.classic import EigenRecognizer, FisherRecognizer, LBPHRecognizer
from facialauth.recognition.embedding import EmbeddingRecognizer
from facialauth.recognition.factory import create_recognizer, recognizer_for

__all__ = [
    "MatchDecision",
    "Recognizer",
    "Sample",
    "LBPHRecognizer",
    "EigenRecognizer",
    "FisherRecognizer",
    "EmbeddingRecognizer",
    "create_recognizer",
    "recognizer_for",
]
