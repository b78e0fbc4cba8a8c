"""Caller identification for the coordinator API.

Requesters identify themselves with the ``x-requester-addr`` header. The
address is checked for shape only; ownership is proven on-chain when the
requester funds the escrow.
"""

from typing import Annotated

from coordinator.jobs.models import is_valid_address
from fastapi import Depends, Header, HTTPException, status

REQUESTER_HEADER = "x-requester-addr"


def get_requester_address(
    x_requester_addr: Annotated[str | None, Header()] = None,
) -> str:
    """Resolve the requester address from the request headers."""
    if not x_requester_addr:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {REQUESTER_HEADER} header",
        )
    address = x_requester_addr.strip()
    if not is_valid_address(address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {REQUESTER_HEADER} header",
        )
    return address


RequesterAddress = Annotated[str, Depends(get_requester_address)]
