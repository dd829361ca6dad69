"""
Pricing calculations and rate management.

Handles cost computations for usage events. Rates come from the LiteLLM
model price list (fetched online or read from the local cache) with a fixed
built-in table as the last resort.
"""

import json
import os
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tokenwatch.core.token_counter import TokenCounts
from tokenwatch.storage.models import UsageEvent

logger = structlog.get_logger()

LITELLM_PRICING_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
)
MODEL_PREFIXES = ("anthropic/", "claude-3-5-", "claude-3-", "claude-", "openrouter/anthropic/")


class UpstreamUnavailable(Exception):
    """Raised when the remote pricing table cannot be fetched."""


class CostMode(Enum):
    """How event costs are resolved."""
    AUTO = "auto"          # precomputed cost when present, otherwise from tokens
    CALCULATE = "calculate"  # always from tokens
    DISPLAY = "display"    # precomputed cost only, 0 when missing


@dataclass(frozen=True)
class ModelPricing:
    """Per-token USD pricing for a specific model."""
    input_cost_per_token: Decimal
    output_cost_per_token: Decimal
    cache_creation_cost_per_token: Decimal = Decimal("0")
    cache_read_cost_per_token: Decimal = Decimal("0")

    @classmethod
    def per_million(cls, input_cost, output_cost, cache_creation_cost, cache_read_cost) -> "ModelPricing":
        million = Decimal("1000000")
        return cls(
            input_cost_per_token=Decimal(input_cost) / million,
            output_cost_per_token=Decimal(output_cost) / million,
            cache_creation_cost_per_token=Decimal(cache_creation_cost) / million,
            cache_read_cost_per_token=Decimal(cache_read_cost) / million,
        )


@dataclass(frozen=True)
class PricingTable:
    """Pricing table keyed by model name."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model.

        Tries an exact match, then known provider prefixes, then a partial
        match on either side of the name.

        Returns:
            ModelPricing for the model, or None when the model is unknown
        """
        if model in self.prices:
            return self.prices[model]

        for prefix in MODEL_PREFIXES:
            candidate = f"{prefix}{model}"
            if candidate in self.prices:
                return self.prices[candidate]

        lowered = model.lower()
        for key, pricing in self.prices.items():
            key_lower = key.lower()
            if key_lower in lowered or lowered in key_lower:
                return pricing
        return None


# Built-in fallback, USD per million tokens
PRICING_TABLE = PricingTable({
    "claude-opus-4-1": ModelPricing.per_million("15", "75", "18.75", "1.50"),
    "claude-opus-4": ModelPricing.per_million("15", "75", "18.75", "1.50"),
    "claude-sonnet-4": ModelPricing.per_million("3", "15", "3.75", "0.30"),
    "claude-3-7-sonnet": ModelPricing.per_million("3", "15", "3.75", "0.30"),
    "claude-3-5-sonnet": ModelPricing.per_million("3", "15", "3.75", "0.30"),
    "claude-3-5-haiku": ModelPricing.per_million("0.80", "4", "1", "0.08"),
    "claude-3-opus": ModelPricing.per_million("15", "75", "18.75", "1.50"),
    "claude-3-haiku": ModelPricing.per_million("0.25", "1.25", "0.30", "0.03"),
})


def calculate_cost(pricing: ModelPricing, tokens: TokenCounts) -> float:
    """Calculate the USD cost of a token usage at the given rates."""
    total = (
        Decimal(tokens.input_tokens) * pricing.input_cost_per_token
        + Decimal(tokens.output_tokens) * pricing.output_cost_per_token
        + Decimal(tokens.cache_creation_tokens) * pricing.cache_creation_cost_per_token
        + Decimal(tokens.cache_read_tokens) * pricing.cache_read_cost_per_token
    )
    return float(total)


def default_pricing_cache_path() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return Path(cache_home) / "tokenwatch" / "pricing.json"


def _to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    return Decimal(str(value))


def convert_litellm_pricing(raw: Any) -> PricingTable:
    """Convert the LiteLLM price list into a PricingTable.

    Entries without per-token input and output costs are ignored.
    """
    if not isinstance(raw, dict):
        raise ValueError("Pricing data must be a JSON object")

    prices: Dict[str, ModelPricing] = {}
    for model, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        if "input_cost_per_token" not in entry or "output_cost_per_token" not in entry:
            continue
        try:
            prices[model] = ModelPricing(
                input_cost_per_token=_to_decimal(entry.get("input_cost_per_token")),
                output_cost_per_token=_to_decimal(entry.get("output_cost_per_token")),
                cache_creation_cost_per_token=_to_decimal(entry.get("cache_creation_input_token_cost")),
                cache_read_cost_per_token=_to_decimal(entry.get("cache_read_input_token_cost")),
            )
        except ArithmeticError:
            continue
    return PricingTable(prices)


class PricingFetcher:
    """Owned pricing resource for one batch load or monitoring session.

    The table is resolved lazily on first use:

    - online mode fetches the LiteLLM list and refreshes the local cache,
      falling back to the cache and then to the built-in table;
    - offline mode never touches the network.

    Use as a context manager or call close() on every exit path.
    """

    def __init__(
        self,
        offline: bool = False,
        cache_path: Optional[Path] = None,
        client: Optional[httpx.Client] = None,
        url: str = LITELLM_PRICING_URL,
    ):
        self.offline = offline
        self.cache_path = Path(cache_path) if cache_path is not None else default_pricing_cache_path()
        self.url = url
        self._client = client
        self._owns_client = client is None
        self._table: Optional[PricingTable] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=10.0)
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.HTTPError, httpx.TimeoutException)),
        reraise=True,
    )
    def _download(self) -> Any:
        response = self._get_client().get(self.url)
        response.raise_for_status()
        return response.json()

    def _fetch_remote(self) -> PricingTable:
        """Fetch the remote price list and refresh the local cache.

        Raises:
            UpstreamUnavailable: If the list cannot be fetched or decoded
        """
        try:
            raw = self._download()
            table = convert_litellm_pricing(raw)
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"Failed to fetch pricing from {self.url}: {e}") from e

        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(raw), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write pricing cache", path=str(self.cache_path), error=str(e))
        return table

    def _load_cached(self) -> Optional[PricingTable]:
        if not self.cache_path.exists():
            return None
        try:
            raw = json.loads(self.cache_path.read_text(encoding="utf-8"))
            return convert_litellm_pricing(raw)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable pricing cache", path=str(self.cache_path), error=str(e))
            return None

    def _resolve_table(self) -> PricingTable:
        if not self.offline:
            try:
                table = self._fetch_remote()
                logger.debug("Loaded remote pricing", models=len(table.prices))
                return table
            except UpstreamUnavailable as e:
                logger.warning("Pricing fetch failed, using cached pricing", error=str(e))

        cached = self._load_cached()
        if cached is not None and cached.prices:
            return cached

        logger.debug("Using built-in pricing table")
        return PRICING_TABLE

    def get_table(self) -> PricingTable:
        if self._closed:
            raise RuntimeError("PricingFetcher is closed")
        if self._table is None:
            self._table = self._resolve_table()
        return self._table

    def get_model_pricing(self, model: str) -> Optional[ModelPricing]:
        pricing = self.get_table().get_pricing(model)
        if pricing is None and self._table is not PRICING_TABLE:
            pricing = PRICING_TABLE.get_pricing(model)
        return pricing

    def calculate_cost_from_tokens(self, tokens: TokenCounts, model: str) -> float:
        """Calculate cost for a model; unknown models cost 0."""
        pricing = self.get_model_pricing(model)
        if pricing is None:
            logger.debug("No pricing for model", model=model)
            return 0.0
        return calculate_cost(pricing, tokens)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_client and self._client is not None:
            self._client.close()
        self._client = None

    def __enter__(self) -> "PricingFetcher":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def calculate_cost_for_event(
    event: UsageEvent,
    mode: CostMode,
    fetcher: Optional[PricingFetcher],
) -> float:
    """Resolve the cost of one event according to the cost mode.

    Args:
        event: Parsed usage event
        mode: Cost resolution mode
        fetcher: Pricing resource; required unless mode is DISPLAY

    Returns:
        Cost in USD
    """
    if mode is CostMode.DISPLAY or fetcher is None:
        return event.precomputed_cost or 0.0

    if mode is CostMode.AUTO and event.precomputed_cost is not None:
        return event.precomputed_cost

    if event.model is None:
        return 0.0
    return fetcher.calculate_cost_from_tokens(event.tokens, event.model)
