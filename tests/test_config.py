"""
Tests for VerificationConfig
"""
import pytest

from liveverify.config import VerificationConfig
from liveverify.models.data_models import FacePoseDirection, LivenessChallenge


class TestVerificationConfig:

    def test_defaults(self):
        config = VerificationConfig()

        assert config.required_poses == (
            FacePoseDirection.CENTER,
            FacePoseDirection.LEFT,
            FacePoseDirection.RIGHT,
        )
        assert config.required_challenges == (LivenessChallenge.BLINK, LivenessChallenge.SMILE)
        assert config.min_captures_per_pose == 3
        assert config.match_threshold == 0.70
        assert config.required_blinks == 2
        assert config.required_smile_frames == 10
        assert config.challenge_timeout_frames == 150
        assert config.ear_open_threshold == 0.18
        assert config.smile_ratio_threshold == 3.0

    def test_from_env_without_overrides(self, monkeypatch):
        monkeypatch.delenv("LIVEVERIFY_MATCH_THRESHOLD", raising=False)
        assert VerificationConfig.from_env() == VerificationConfig()

    def test_from_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LIVEVERIFY_MATCH_THRESHOLD", "0.8")
        monkeypatch.setenv("LIVEVERIFY_REQUIRED_BLINKS", "3")
        monkeypatch.setenv("LIVEVERIFY_REQUIRED_CHALLENGES", "smile, turn_left")

        config = VerificationConfig.from_env()

        assert config.match_threshold == 0.8
        assert config.required_blinks == 3
        assert isinstance(config.required_blinks, int)
        assert config.required_challenges == (LivenessChallenge.SMILE, LivenessChallenge.TURN_LEFT)

    def test_from_env_invalid_value(self, monkeypatch):
        monkeypatch.setenv("LIVEVERIFY_REQUIRED_POSES", "center,sideways")

        with pytest.raises(ValueError, match="LIVEVERIFY_REQUIRED_POSES"):
            VerificationConfig.from_env()
