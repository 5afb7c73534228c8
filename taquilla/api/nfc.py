"""
NFC band API endpoints.

Band binding (prepare, sign payload, complete), band management for the
owner, and terminal operations (tap validation and payments).
"""
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from taquilla.api.deps import get_current_user_context
from taquilla.api.permissions import can_operate_terminal
from taquilla.db import schemas
from taquilla.db.database import get_db
from taquilla.db.repositories import nfc as nfc_repo
from taquilla.db.repositories import tickets as ticket_repo
from taquilla.db.repositories import users as user_repo
from taquilla.services import anti_cloning, nfc_binding_service, nfc_payment_service, nfc_validation_service
from taquilla.utils import token_crypto
from taquilla.utils.geo import Location

router = APIRouter(prefix="/nfc", tags=["nfc"])


def _location(payload: Optional[schemas.LocationIn]) -> Optional[Location]:
    if payload is None:
        return None
    return Location(lat=payload.lat, lng=payload.lng)


def _require_terminal(db: Session, current_user, event_id: Optional[uuid.UUID]) -> None:
    if current_user.get("is_superadmin"):
        return
    event = ticket_repo.get_event(db, event_id) if event_id else None
    if event is None or not can_operate_terminal(current_user, event):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# Binding

@router.post("/bind/prepare", response_model=schemas.BindingPrepareResponse)
def prepare_binding(
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    issued = nfc_binding_service.prepare_binding(db, user)
    return schemas.BindingPrepareResponse(token=issued.token, expires_at=issued.expires_at, expires_in=issued.expires_in)


@router.post("/bind/sign-payload", response_model=schemas.BindingPayloadResponse)
def sign_binding_payload(
    payload: schemas.BindingTokenRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    signed = nfc_binding_service.sign_binding_payload_for_user(db, payload.token, user)
    return schemas.BindingPayloadResponse(
        version=signed.version,
        flags=signed.flags,
        token=signed.token,
        expires_at=signed.expires_at,
        signature=signed.signature,
    )


@router.post("/bind/complete", response_model=schemas.BindingCompleteResponse)
def complete_binding(
    payload: schemas.BindingCompleteRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    band, security_token = nfc_binding_service.complete_binding(
        db,
        payload.token,
        user,
        band_uid=payload.band_uid,
        payload_signature=payload.payload_signature,
        event_id=payload.event_id,
    )
    return schemas.BindingCompleteResponse(band=band, security_token=security_token)


@router.get("/challenge", response_model=schemas.BindingChallengeResponse)
def get_binding_challenge(user_context=Depends(get_current_user_context)):
    return schemas.BindingChallengeResponse(challenge=token_crypto.generate_binding_challenge())


# Bands

@router.get("/bands", response_model=List[schemas.NfcBand])
def list_my_bands(
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    return nfc_binding_service.list_bands_for_user(db, user.id)


@router.post("/bands", response_model=schemas.BindingCompleteResponse, status_code=status.HTTP_201_CREATED)
def register_band(
    payload: schemas.BandRegisterRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    """Staff registration of a physical band on behalf of an attendee."""
    user, current_user = user_context
    _require_terminal(db, current_user, payload.event_id)
    if user_repo.get_user(db, payload.user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    band, security_token = nfc_binding_service.register_band(
        db,
        payload.band_uid,
        payload.user_id,
        event_id=payload.event_id,
        registered_by=user.id,
    )
    return schemas.BindingCompleteResponse(band=band, security_token=security_token)


@router.post("/bands/{band_id}/refresh-token", response_model=schemas.SecurityTokenResponse)
def refresh_band_token(
    band_id: uuid.UUID,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    token, expires_at = nfc_binding_service.refresh_security_token(db, band_id, user)
    return schemas.SecurityTokenResponse(security_token=token, expires_at=expires_at)


@router.post("/bands/{band_id}/status", response_model=schemas.NfcBand)
def update_band_status(
    band_id: uuid.UUID,
    payload: schemas.BandStatusRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, _ = user_context
    return nfc_binding_service.set_band_status(db, band_id, payload.status, user)


@router.post("/bands/{band_id}/verify", response_model=schemas.BandVerifyResponse)
def verify_band(
    band_id: uuid.UUID,
    payload: schemas.BandVerifyRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    verified = nfc_binding_service.verify_binding(db, band_id, payload.challenge, payload.response)
    return schemas.BandVerifyResponse(verified=verified)


# Terminal

@router.post("/validate", response_model=schemas.NfcValidateResponse)
def validate_tap(
    payload: schemas.NfcValidateRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    _, current_user = user_context
    _require_terminal(db, current_user, payload.event_id)
    result = nfc_validation_service.validate_nfc_request(
        db, payload.token, payload.nonce, payload.event_id, _location(payload.location)
    )
    return schemas.NfcValidateResponse(
        valid=result.valid,
        band_id=result.band_id,
        user_id=result.user_id,
        session_token=result.session_token,
        error=result.reason,
    )


@router.post("/payment", response_model=schemas.NfcPaymentResponse)
def pay_with_band(
    payload: schemas.NfcPaymentRequest,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    _require_terminal(db, current_user, payload.event_id)
    result = nfc_payment_service.process_nfc_payment(
        db,
        payload.band_uid,
        payload.amount,
        payload.event_id,
        token=payload.token,
        nonce=payload.nonce,
        location=_location(payload.location),
        description=payload.description,
        operator_id=user.id,
    )
    return schemas.NfcPaymentResponse(
        transaction_id=result.transaction_id,
        wallet_transaction_id=result.wallet_transaction_id,
        new_balance=result.new_balance,
    )


@router.post("/sessions/{session_token}/end", response_model=schemas.UsageSessionEndResponse)
def end_session(
    session_token: str,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context
    existing = nfc_repo.get_session_by_token(db, session_token)
    if existing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usage session not found")
    band = nfc_repo.get_band(db, existing.nfc_band_id)
    if band is None or band.user_id != user.id:
        _require_terminal(db, current_user, band.event_id if band else None)
    session = anti_cloning.end_usage_session(db, session_token)
    db.commit()
    return schemas.UsageSessionEndResponse(
        session_token=session.session_token,
        ended_at=session.ended_at,
        transaction_count=session.transaction_count or 0,
    )
