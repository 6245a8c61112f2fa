from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BlockInfo(BaseModel):
    """A confirmed block as reported by the chain provider."""

    height: int = Field(..., ge=0)
    hash: str = Field(..., min_length=1)
    timestamp: Optional[int] = None
    tx_count: Optional[int] = None
    total_fees: Optional[int] = Field(default=None, description="Total fees (sats)")
    median_fee: Optional[float] = Field(
        default=None, description="Median fee rate (sat/vB)"
    )


class Utxo(BaseModel):
    txid: str
    vout: int
    value: int = Field(..., description="Output value (sats)")
    confirmed: bool = True


class InscriptionCoin(BaseModel):
    name: str
    ticker: str
    description: str
    votes: int
    website: Optional[str] = None
    twitter: Optional[str] = None
    telegram: Optional[str] = None


class InscriptionPayload(BaseModel):
    """JSON document written on-chain for a winning proposal."""

    project: str
    type: str = "meme-coin-inscription"
    block: int
    coin: InscriptionCoin


class MarketplaceOrder(BaseModel):
    """Funding instructions returned when an inscription order is created."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    pay_address: str = Field(..., alias="payAddress")
    amount: int = Field(..., ge=0, description="Amount to pay (sats)")
    status: Optional[str] = None


class OrderFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: Optional[str] = None
    status: Optional[str] = None
    inscription_id: Optional[str] = Field(default=None, alias="inscriptionId")
    txid: Optional[str] = None


class MarketplaceOrderStatus(BaseModel):
    """Status snapshot of an externally processed inscription order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    status: str
    pay_address: Optional[str] = Field(default=None, alias="payAddress")
    amount: Optional[int] = None
    paid_amount: Optional[int] = Field(default=None, alias="paidAmount")
    files: List[OrderFile] = Field(default_factory=list)

    @property
    def first_file(self) -> Optional[OrderFile]:
        return self.files[0] if self.files else None
