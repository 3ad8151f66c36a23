from pydantic import BaseModel, ConfigDict, Field, conint


class AddToCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: conint(gt=0) = Field(alias="productId")
    quantity: conint(gt=0) = 1


class UpdateCartItemRequest(BaseModel):
    # Zero or negative removes the line
    quantity: int
