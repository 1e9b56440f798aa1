"""
Layer 4 — Scan Result
Packages the confirmed image and hands it to the upload collaborator
"""
from .result import ScanResult, UploadHandoff, hand_off

__all__ = ['ScanResult', 'UploadHandoff', 'hand_off']
