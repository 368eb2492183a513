from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    client_id: str = Field("", alias="clientId")
    pack_id: str | None = Field(None, alias="packId")
    email: str | None = None
    payment_method: str = Field("card", alias="paymentMethod")

    model_config = {"populate_by_name": True}


class PackOut(BaseModel):
    id: str
    name: str
    credits: int
    price: float
    currency: str


class BalanceOut(BaseModel):
    clientId: str
    credits: int


class OrderStatusOut(BaseModel):
    orderId: str
    status: str
    creditStatus: str
    credits: int | None
    # pending / credited / credit-pending / failed
    state: str
