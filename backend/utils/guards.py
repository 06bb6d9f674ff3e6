from fastapi import HTTPException
from bson import ObjectId

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id", *, status_code: int = 400) -> ObjectId:
    if not value or not ObjectId.is_valid(value):
        raise HTTPException(status_code=status_code, detail=f"Invalid {name}")
    return ObjectId(value)


# -------------------------------
# Seller Scope Guard
# -------------------------------

def assert_seller_scope(seller: dict, requested_seller_id: str | None):
    """A seller may only read their own data."""
    if requested_seller_id and requested_seller_id != str(seller["_id"]):
        raise HTTPException(
            status_code=403,
            detail="Cannot access another seller's data",
        )
