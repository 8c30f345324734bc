"""Hat Relay — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class HatRelaySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HAT_RELAY_",
        extra="ignore",
    )

    # ── Chain ──────────────────────────────────────────────────
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 11155111

    # ── Hats Protocol ──────────────────────────────────────────
    hats_contract_address: str = "0x3bc1a0ad72417f2d411118085256fc53cbddd137"
    parent_hat_id: int = 0
    max_supply: int = 1
    hat_mutable: bool = True
    image_uri: str = ""

    # ── Governing Safe ─────────────────────────────────────────
    # Owners of this Safe may create and assign hats. It is also the
    # eligibility and toggle authority of every hat created here.
    governing_safe_address: str = "0x0000000000000000000000000000000000000000"
    eligibility_address: str | None = None
    toggle_address: str | None = None

    # ── Safe Transaction Service (multisig relay) ──────────────
    safe_tx_service_url: str = "https://safe-transaction-sepolia.safe.global"
    safe_api_key: str = ""
    relay_safe_address: str | None = None
    multisend_call_only_address: str = "0x40a2accbd92bca938b02010e17a5b8929b49130d"
    proposal_origin: str = "hat-relay"
    http_timeout_seconds: float = 30.0

    # ── Safe deployment (owners without a Safe yet) ────────────
    # Canonical Safe 1.3.0 deployments.
    deploy_missing_safe: bool = True
    safe_proxy_factory_address: str = "0xa6b71e26c5e0845f74c812102ca7114b6a896ab2"
    safe_singleton_address: str = "0x3e5c63644e683549055b9be8653de26e0b4cd36e"
    safe_fallback_handler_address: str = "0xf48f2b2d2a534e402487b3ee7c18c33aec0fe5e4"
    safe_salt_nonce: int = 0

    # ── Connected wallet ───────────────────────────────────────
    signer_private_key: str = ""

    # ── Dashboard ──────────────────────────────────────────────
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 8000

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def eligibility_authority(self) -> str:
        return self.eligibility_address or self.governing_safe_address

    @property
    def toggle_authority(self) -> str:
        return self.toggle_address or self.governing_safe_address


settings = HatRelaySettings()
