from fastapi import Depends, HTTPException, Request, status

from order_board.auth import Principal, assert_tenant_scope, can_edit_cards, get_current_principal


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def tenant_principal(tenant_id: str, principal: Principal = Depends(get_current_principal)) -> Principal:
    assert_tenant_scope(principal, tenant_id)
    return principal


def tenant_editor(principal: Principal = Depends(tenant_principal)) -> Principal:
    if not can_edit_cards(principal):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal
