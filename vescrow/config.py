"""vescrow — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class VescrowSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "VESCROW_",
        "extra": "ignore",
    }

    # ── Storage ────────────────────────────────────────────────
    database_url: str = "sqlite:///vescrow.db"
    database_echo: bool = False

    # ── Namespace defaults (used by init_namespace) ───────────
    lockup_default_target_rewards_pct: int = 100
    lockup_default_target_voting_pct: int = 2000  # 20x at saturation
    lockup_min_duration: int = 86400 * 14
    lockup_min_amount: int = 1
    lockup_max_saturation: int = 86400 * 365 * 4
    proposal_min_voting_power_for_quorum: int = 1
    proposal_min_pass_pct: int = 60
    proposal_can_update_after_votes: bool = False

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    def namespace_defaults(self) -> dict[str, int | bool]:
        """Namespace parameters keyed by Namespace field name."""
        return {
            "lockup_default_target_rewards_pct": self.lockup_default_target_rewards_pct,
            "lockup_default_target_voting_pct": self.lockup_default_target_voting_pct,
            "lockup_min_duration": self.lockup_min_duration,
            "lockup_min_amount": self.lockup_min_amount,
            "lockup_max_saturation": self.lockup_max_saturation,
            "proposal_min_voting_power_for_quorum": self.proposal_min_voting_power_for_quorum,
            "proposal_min_pass_pct": self.proposal_min_pass_pct,
            "proposal_can_update_after_votes": self.proposal_can_update_after_votes,
        }


settings = VescrowSettings()
