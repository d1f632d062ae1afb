# Service layer components
from .face_detector import FaceDetector, MediaPipeFaceDetector
from .liveness_analyzer import LivenessAnalyzer
from .matcher import FaceMatcher
from .photo_source import ImageDownloader, ProfilePhotoSource, VerificationSink
from .signature_extractor import extract_signature, similarity_score
from .verification_session import VerificationSession
from .verification_store import VerificationStore

__all__ = ['FaceDetector', 'MediaPipeFaceDetector', 'LivenessAnalyzer', 'FaceMatcher', 'ImageDownloader', 'ProfilePhotoSource', 'VerificationSink', 'extract_signature', 'similarity_score', 'VerificationSession', 'VerificationStore']
