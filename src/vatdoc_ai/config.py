"""
Runtime configuration for VatDoc-AI.

All tunables live in one settings object loaded from the environment
(prefix ``VATDOC_``) or an optional ``.env`` file. Components take the same
values as keyword arguments, so the settings object is only needed where the
pipeline is wired together.
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTIONS = (
    "You are reading a business document (invoice, receipt, credit note or statement). "
    "Return ONLY a JSON object with the keys: documentType, businessDetails "
    "{businessName, vatNumber, address}, transactionData {date, invoiceNumber, currency}, "
    "vatData {lineItems [{description, quantity, unitPrice, vatRate, vatAmount, totalAmount}], "
    "subtotal, totalVatAmount, grandTotal}, classification {category, confidence, reasoning}, "
    "extractedText. Use null for anything not printed on the document."
)


class VatDocSettings(BaseSettings):
    """Settings for the extraction and learning pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="VATDOC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Document-understanding service
    api_key: Optional[str] = Field(default=None)
    base_url: str = Field(default="https://api.openai.com/v1")
    vision_models: List[str] = Field(default_factory=lambda: ["gpt-4o", "gpt-4o-mini"])
    text_models: List[str] = Field(default_factory=lambda: ["gpt-4o-mini", "gpt-4-turbo"])
    instructions: str = Field(default=DEFAULT_INSTRUCTIONS)
    max_output_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_image_edge: int = Field(default=2048, gt=0)

    # Request governor
    requests_per_minute: int = Field(default=50, gt=0)
    cost_per_minute: int = Field(default=40000, gt=0)
    utilization_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    queue_capacity: int = Field(default=100, gt=0)
    max_concurrency: int = Field(default=4, gt=0)
    governor_max_retries: int = Field(default=1, ge=0)
    governor_base_delay: float = Field(default=1.0, ge=0.0)
    governor_max_delay: float = Field(default=30.0, ge=0.0)
    failure_threshold: int = Field(default=5, gt=0)
    cooldown_seconds: float = Field(default=60.0, ge=0.0)
    call_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # Extraction orchestrator
    attempts_per_model: int = Field(default=3, gt=0)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=8.0, ge=0.0)

    # Categorization and reconciliation
    reconciliation_tolerance: float = Field(default=0.02, ge=0.0)
    tax_ceiling: float = Field(default=50000.0, gt=0.0)
    plausible_min: float = Field(default=0.01, ge=0.0)
    plausible_max: float = Field(default=10000.0, gt=0.0)
    exclusion_window: int = Field(default=25, ge=0)
    valid_vat_rates: List[float] = Field(default_factory=lambda: [0.0, 4.8, 9.0, 13.5, 23.0])

    # Templates and learning
    template_match_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    template_creation_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    learning_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    correction_batch_size: int = Field(default=10, gt=0)
    store_path: Optional[str] = Field(default=None)

    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def ai_enabled(self) -> bool:
        return bool(self.api_key) and self.api_key != "your_api_key_here"
