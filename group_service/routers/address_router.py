from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..crud import create_address, delete_address, get_addresses
from ..database import get_db
from ..schemas import AddressCreate, AddressOut

router = APIRouter(prefix="/addresses", tags=["Addresses"])


@router.get("", response_model=list[AddressOut])
def my_addresses(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_addresses(db, current_user["id"])


@router.post("", response_model=AddressOut, status_code=201)
def add_address(
    body: AddressCreate,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return create_address(db, current_user["id"], body.model_dump())


@router.delete("/{address_id}", response_model=AddressOut)
def remove_address(
    address_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    address = delete_address(db, current_user["id"], address_id)
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    return address
