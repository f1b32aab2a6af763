# /relaybridge/core/api.py
# HTTP surface over the pipeline coordinator.
import uuid
from contextlib import asynccontextmanager
from typing import List

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from structlog.contextvars import clear_contextvars

from relaybridge.core import chains
from relaybridge.core.config import settings
from relaybridge.core.coordinator import PipelineCoordinator
from relaybridge.core.errors import BridgeError, GasEstimationFailed, SignatureMismatch, SignerUnavailable
from relaybridge.core.logger import bind_request, get_logger
from relaybridge.core.models import (
    Attestation,
    BridgePath,
    Deposit,
    DepositCandidate,
    OracleDescriptor,
    OracleRedeemRequest,
    ReceiptRedeemRequest,
    RedemptionResult,
)

log = get_logger(__name__)


def verify(authorization: str | None = Header(None)):
    token = settings.CONTROL_API_TOKEN
    if not token:
        raise HTTPException(status_code=500, detail="Control token not configured")
    if authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Unauthorized")


class PollRequest(BaseModel):
    descriptor: OracleDescriptor
    deposit_id: str | None = None
    deadline: float | None = None


class AttachRequest(BaseModel):
    attestation: Attestation


class ReceiptRequest(BaseModel):
    amount: int
    nonce: int | None = None
    source_chain_id: int | None = None


def error_body(exc: BridgeError) -> dict:
    body = {"error": exc.__class__.__name__, "detail": exc.message}
    if isinstance(exc, GasEstimationFailed):
        body["reason"] = exc.reason
    elif isinstance(exc, SignatureMismatch):
        body.update(expected=exc.expected, recovered=exc.recovered)
    elif isinstance(exc, SignerUnavailable):
        body["causes"] = exc.causes
    return body


def create_app(coordinator: PipelineCoordinator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await coordinator.close()
        log.warning("API_SHUTDOWN_COMPLETE")

    app = FastAPI(title="relaybridge", lifespan=lifespan)
    app.state.coordinator = coordinator

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clear_contextvars()
        bind_request(request.headers.get("x-request-id") or uuid.uuid4().hex, route=request.url.path)
        return await call_next(request)

    @app.exception_handler(BridgeError)
    async def bridge_error(request: Request, exc: BridgeError):
        if exc.status_code >= 500:
            log.error("REQUEST_FAILED", error=exc.__class__.__name__, detail=exc.message)
        else:
            log.info("REQUEST_REJECTED", error=exc.__class__.__name__, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    @app.get("/healthz")
    async def healthz():
        return {
            "status": "ok",
            "network": coordinator.network,
            "signer": coordinator.active_signer,
            "vault_configured": bool(coordinator.vault_address),
        }

    # --- Deposits ---

    @app.post("/deposits/{path}", response_model=Deposit)
    async def notify_deposit(path: BridgePath, candidate: DepositCandidate):
        return await coordinator.notify_deposit(path, candidate)

    @app.get("/deposits/{path}/unredeemed", response_model=List[Deposit])
    async def get_unredeemed(path: BridgePath, user: str):
        return await coordinator.get_unredeemed(path, user)

    @app.get("/deposits/{path}/all", response_model=List[Deposit])
    async def get_all_unredeemed(path: BridgePath, auth: None = Depends(verify)):
        return await coordinator.get_all_unredeemed(path)

    @app.get("/deposits/{path}/by-key/{natural_key}", response_model=Deposit)
    async def find_deposit(path: BridgePath, natural_key: str, user: str | None = None):
        return await coordinator.find_deposit(path, natural_key, user)

    @app.get("/deposits/{path}/{deposit_id}", response_model=Deposit)
    async def get_deposit(path: BridgePath, deposit_id: str):
        return await coordinator.get_deposit(path, deposit_id)

    @app.post("/deposits/{path}/{deposit_id}/attestation", response_model=Deposit)
    async def attach_attestation(path: BridgePath, deposit_id: str, req: AttachRequest):
        return await coordinator.attach_attestation(path, deposit_id, req.attestation)

    @app.post("/deposits/{path}/{deposit_id}/redeemed", response_model=Deposit)
    async def mark_redeemed(path: BridgePath, deposit_id: str, redeem_tx_hash: str = Body(..., embed=True)):
        return await coordinator.mark_redeemed(path, deposit_id, redeem_tx_hash)

    # --- Attestations ---

    @app.get("/attestations/oracle/{source_domain}/{tx_hash}")
    async def check_oracle_attestation(source_domain: int, tx_hash: str):
        attestation = await coordinator.check_attestation(OracleDescriptor(source_domain=source_domain, tx_hash=tx_hash))
        if attestation is None:
            return JSONResponse(status_code=202, content={"status": "pending"})
        return {"status": "complete", "attestation": attestation.model_dump()}

    @app.post("/attestations/oracle/poll")
    async def poll_oracle_attestation(req: PollRequest):
        attestation = await coordinator.get_or_poll_attestation(
            req.descriptor, deposit_id=req.deposit_id, deadline=req.deadline
        )
        return {"status": "complete", "attestation": attestation.model_dump()}

    @app.post("/attestations/receipt")
    async def issue_receipt(req: ReceiptRequest):
        descriptor, attestation = await coordinator.issue_receipt(req.amount, req.nonce, req.source_chain_id)
        return {"descriptor": descriptor.model_dump(), "attestation": attestation.model_dump()}

    # --- Redemption ---

    @app.post("/redeem/oracle", response_model=RedemptionResult)
    async def redeem_oracle(req: OracleRedeemRequest):
        return await coordinator.verify_and_redeem(BridgePath.ORACLE, req)

    @app.post("/redeem/receipt", response_model=RedemptionResult)
    async def redeem_receipt(req: ReceiptRedeemRequest):
        return await coordinator.verify_and_redeem(BridgePath.RECEIPT, req)

    # --- Oracle chain info ---

    @app.get("/chains")
    async def supported_chains():
        return {"chains": chains.supported_chains()}

    @app.get("/chains/{chain}")
    async def chain_info(chain: str):
        if not chains.is_supported(chain):
            raise HTTPException(status_code=404, detail=f"Chain {chain} not supported")
        return {"chain": chain, "domain": chains.get_domain(chain), "contracts": chains.get_contract_addresses(chain)}

    return app
