"""
Motion state classification from sensor and position samples.
"""

from motion.classifier import MotionClassifier, MotionClassifierConfig

__all__ = ["MotionClassifier", "MotionClassifierConfig"]
