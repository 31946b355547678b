from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, File, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from proof_anchor import __version__, config
from proof_anchor.core.errors import InputInvalid, PayloadTooLarge, ProofWorkflowError
from proof_anchor.core.logging_config import configure_logging
from proof_anchor.core.utils import format_timestamp, guess_mime_type, utc_now
from proof_anchor.models.api import (
    AnalysisResponse, AnalyzeTextRequest, ErrorResponse, HealthResponse,
    PublishProofRequest, PublishProofResponse
)
from proof_anchor.models.content import ContentItem, ContentKind
from proof_anchor.models.proof import ConnectionState, WalletIdentity
from proof_anchor.services.analysis import AnalysisGateway, HttpAnalyzer, StubAnalyzer
from proof_anchor.services.fingerprint import fingerprint_record
from proof_anchor.services.publisher import ProofPublisher
from proof_anchor.services.registry import HttpProofRegistry, InMemoryProofRegistry, ProofRegistry

configure_logging(config.LOG_LEVEL)

logger = structlog.get_logger()

# Global service clients
analysis_gateway: Optional[AnalysisGateway] = None
proof_registry: Optional[ProofRegistry] = None
proof_publisher: Optional[ProofPublisher] = None


def build_registry() -> ProofRegistry:
    if config.REGISTRY_METADATA_PATH:
        metadata = config.load_registry_metadata(config.REGISTRY_METADATA_PATH)
        logger.info("Loaded registry deployment metadata",
                    contract_name=metadata["contract_name"],
                    address=metadata["address"],
                    chain_id=metadata["chain_id"])
    chain_id = config.registry_chain_id()
    if config.REGISTRY_ENDPOINT:
        return HttpProofRegistry(config.REGISTRY_ENDPOINT, expected_chain_id=chain_id)
    logger.warning("No REGISTRY_ENDPOINT configured, using in-memory proof registry")
    return InMemoryProofRegistry(expected_chain_id=chain_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    global analysis_gateway, proof_registry, proof_publisher

    logger.info("Starting Proof Anchor API")
    try:
        analyzer = HttpAnalyzer(config.ANALYZER_ENDPOINT) if config.ANALYZER_ENDPOINT else StubAnalyzer()
        analysis_gateway = AnalysisGateway(analyzer=analyzer)
        proof_registry = build_registry()
        # Server-side relay: the wallet signs client-side, so no signer here
        proof_publisher = ProofPublisher(registry=proof_registry)
        logger.info("Services initialized",
                    analyzer=type(analyzer).__name__,
                    registry=proof_registry.describe(),
                    expected_chain_id=proof_registry.expected_chain_id)
    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    logger.info("Shutting down Proof Anchor API")


app = FastAPI(
    title="Proof Anchor API",
    description="Analyze content and anchor a tamper-evident proof of the result on-chain",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid Input"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
    }
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def read_upload(upload: Optional[UploadFile], kind: ContentKind) -> ContentItem:
    """Turn a multipart upload into a ContentItem, enforcing presence and size."""
    if upload is None or not upload.filename:
        raise InputInvalid(f"No {kind.value} file provided", stage="upload",
                           hint=f"Attach the {kind.value} as the '{kind.value}' form field.")

    if upload.size and upload.size > config.MAX_PAYLOAD_BYTES:
        raise PayloadTooLarge(upload.size, config.MAX_PAYLOAD_BYTES, stage="upload")

    data = await upload.read()
    return ContentItem.from_bytes(
        kind,
        data,
        original_name=upload.filename,
        mime_type=upload.content_type or guess_mime_type(upload.filename),
    )


async def analyze_item(item: ContentItem) -> AnalysisResponse:
    record = await analysis_gateway.analyze(item)
    fingerprint = fingerprint_record(record)
    return AnalysisResponse(success=True, analysis=record.to_public(), proof_hash=fingerprint.value)


@app.get("/", response_model=dict)
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Proof Anchor API",
        "version": __version__,
        "description": "Content analysis to on-chain proof workflow",
        "docs_url": "/docs",
        "health_url": "/health",
    }


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        timestamp=format_timestamp(utc_now()),
        version=__version__,
        components={
            "analyzer": type(analysis_gateway.analyzer).__name__ if analysis_gateway is not None else "not_initialized",
            "registry": proof_registry.describe() if proof_registry is not None else "not_initialized",
            "expected_chain_id": proof_registry.expected_chain_id if proof_registry is not None else None,
        },
    )


@app.post("/analyze-image", response_model=AnalysisResponse)
async def analyze_image(image: Optional[UploadFile] = File(None, description="Image file to analyze")):
    """Analyze an uploaded image and return its record with the proof hash to publish."""
    item = await read_upload(image, ContentKind.IMAGE)
    logger.info("Processing image analysis", filename=image.filename, content_type=item.mime_type)
    return await analyze_item(item)


@app.post("/analyze-video", response_model=AnalysisResponse)
async def analyze_video(video: Optional[UploadFile] = File(None, description="Video file to analyze")):
    """Analyze an uploaded video and return its record with the proof hash to publish."""
    item = await read_upload(video, ContentKind.VIDEO)
    logger.info("Processing video analysis", filename=video.filename, content_type=item.mime_type)
    return await analyze_item(item)


@app.post("/analyze-text", response_model=AnalysisResponse)
async def analyze_text(request: AnalyzeTextRequest):
    """Analyze a text body."""
    if not request.text or not request.text.strip():
        raise InputInvalid("No text provided", stage="upload", hint="Send a JSON body with a non-empty 'text'.")
    return await analyze_item(ContentItem.from_text(request.text))


@app.post("/publish-proof", response_model=PublishProofResponse)
async def publish_proof(request: PublishProofRequest):
    """
    Register a proof hash for a wallet address with the registry.

    Repeating a (proofHash, walletAddress) pair returns the original transaction.
    """
    if not request.proof_hash or not request.wallet_address:
        raise InputInvalid("Missing required fields", stage="publish",
                           hint="Send both 'proofHash' and 'walletAddress'.")

    try:
        identity = WalletIdentity(address=request.wallet_address,
                                  chain_id=proof_registry.expected_chain_id,
                                  connection_state=ConnectionState.CONNECTED)
    except ValueError as e:
        raise InputInvalid(f"Invalid wallet address: {request.wallet_address}", stage="publish") from e

    receipt = await proof_publisher.publish(request.proof_hash, identity)
    return PublishProofResponse(
        success=True,
        tx_hash=receipt.transaction_id,
        proof_hash=receipt.fingerprint.value,
        wallet_address=receipt.address,
        chain_id=receipt.chain_id,
        timestamp=format_timestamp(receipt.confirmed_at),
    )


@app.exception_handler(ProofWorkflowError)
async def workflow_exception_handler(request: Request, exc: ProofWorkflowError):
    log = logger.warning if exc.http_status < 500 else logger.error
    log("Request failed", url=str(request.url), code=exc.code, stage=exc.stage, error=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", url=str(request.url), errors=str(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=InputInvalid("Malformed request body", stage="request").to_dict(),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An unexpected error occurred", "code": "internal_server_error"}
    )


if __name__ == "__main__":
    uvicorn.run(
        "proof_anchor.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.DEBUG,
        log_config=None,  # We handle logging with structlog
    )
