# metergate/api/models/meter.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

DEFAULT_CURRENCY = "USDC"
DEFAULT_PAYMENT_MESSAGE = "Payment required to access this resource"

PAYMENT_TIPS = [
    "Send USDC transfer to payTo address",
    "Include transaction signature in x-meter-tx header",
    "Include route, amount, and nonce in headers",
    "Retry request with payment proof",
]


class RoutePriceQuote(BaseModel):
    """
    Priced offer for a single route, as served by GET /.meter/price.

    Quotes are immutable once issued. Field names on the wire are camelCase
    (payTo, routeId, expiresAt).
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    price: float = Field(..., description="Amount in token units (e.g. 0.03 USDC).", ge=0)
    currency: str = Field(DEFAULT_CURRENCY, description="Currency code.")
    mint: str = Field(..., description="Token mint address.")
    pay_to: str = Field(..., alias="payTo", description="Wallet that receives the payment.")
    route_id: str = Field(..., alias="routeId", description="Route identifier (e.g. summarize:v1).")
    chain: str = Field(..., description="Network identifier (solana or solana-devnet).")
    expires_at: Optional[int] = Field(None, alias="expiresAt", description="Quote expiry, epoch milliseconds.")

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now_ms


class RouteConfig(BaseModel):
    """Provider-side pricing for one route. Accepts snake_case or camelCase keys."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    price: float = Field(..., ge=0)
    mint: str = Field(..., min_length=1, validation_alias=AliasChoices("mint", "tokenMint"))
    pay_to: str = Field(..., min_length=1, validation_alias=AliasChoices("pay_to", "payTo"))
    chain: str = "solana-devnet"
    currency: str = DEFAULT_CURRENCY

    def quote(self, route_id: str, expires_at: Optional[int] = None) -> RoutePriceQuote:
        return RoutePriceQuote(
            price=self.price,
            currency=self.currency,
            mint=self.mint,
            pay_to=self.pay_to,
            route_id=route_id,
            chain=self.chain,
            expires_at=expires_at,
        )


class PaymentAssertion(BaseModel):
    """Payment proof carried by the x-meter-* request headers."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tx_sig: str = Field(..., alias="txSig", min_length=1)
    route_id: str = Field(..., alias="routeId", min_length=1)
    amount: float
    currency: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1)
    timestamp: int = Field(..., description="Client timestamp, epoch milliseconds.")
    agent_key_id: str = Field(..., alias="agentKeyId", min_length=1)


class AgentMetadata(BaseModel):
    agent_name: Optional[str] = Field(None, alias="agentName")
    issuer: Optional[str] = None
    capabilities: Optional[List[str]] = None

    model_config = ConfigDict(populate_by_name=True)


class AgentCredential(BaseModel):
    """
    Registered ed25519 key for an agent.

    The public key is base64 or base58 text decoding to 32 raw bytes.
    expires_at is epoch milliseconds; the credential is invalid once it passes.
    """
    model_config = ConfigDict(populate_by_name=True)

    key_id: str = Field(..., alias="keyId", min_length=1)
    public_key: str = Field(..., alias="publicKey", min_length=1)
    algorithm: str = "ed25519"
    expires_at: Optional[int] = Field(None, alias="expiresAt")
    metadata: Optional[AgentMetadata] = None

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at < now_ms


class PaymentMemo(BaseModel):
    """Correlation memo attached to a payment transfer."""
    model_config = ConfigDict(populate_by_name=True)

    provider_id: str = Field(..., alias="providerId")
    route_id: str = Field(..., alias="routeId")
    nonce: str
    amount: float
    timestamp: int


class PaymentRequiredResponse(BaseModel):
    """Body of every expected 402 rejection."""
    model_config = ConfigDict(populate_by_name=True)

    error: str = "Payment Required"
    route: str = "unknown"
    amount: float = 0
    currency: str = DEFAULT_CURRENCY
    pay_to: str = Field("", alias="payTo")
    mint: str = ""
    chain: str = "solana-devnet"
    message: str = DEFAULT_PAYMENT_MESSAGE
    reason: str = "payment_required"
    detail: Optional[str] = None
    tips: List[str] = Field(default_factory=lambda: list(PAYMENT_TIPS))


class FacilitatorVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_sig: str = Field(..., alias="txSig")
    route_id: str = Field(..., alias="routeId")
    amount: float
    pay_to: str = Field(..., alias="payTo")
    token_mint: str = Field(..., alias="tokenMint")


class FacilitatorVerifyResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    verified: bool = False
    status: Optional[str] = None
    payer: Optional[str] = None
    error: Optional[Any] = None


class DiscoveryRoute(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    price: float
    currency: str = DEFAULT_CURRENCY
    mint: str
    chain: str
    pay_to: str = Field(..., alias="payTo")


class DiscoveryDocument(BaseModel):
    """Body of GET /.well-known/x402."""
    version: str = "1.0.0"
    provider: str
    routes: Dict[str, DiscoveryRoute] = Field(default_factory=dict)
