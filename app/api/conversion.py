"""
Conversion API endpoints for the Media Transcode Service.

Every parameter profile gets a POST endpoint that takes one file as a
streaming multipart upload, converts it and answers with the converted
file as an attachment. Temporary files never outlive the request.
"""

from pathlib import Path

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from app.config import Settings, get_settings
from app.configs.profiles import PROFILES, ParameterProfile, endpoint_path, list_endpoints
from app.exceptions import ConversionError
from app.models.response import EndpointInfo, ErrorResponse
from app.services.delivery import ResultDelivery, build_download_name
from app.services.orchestrator import ConversionOrchestrator, get_orchestrator
from app.services.upload import UploadService
from app.utils.fs import allocate_temp_path, delete_file, ensure_directory

router = APIRouter()

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid upload"},
    413: {"model": ErrorResponse, "description": "File too large"},
    500: {"model": ErrorResponse, "description": "Conversion failed"},
    504: {"model": ErrorResponse, "description": "Conversion timed out"},
}


def get_upload_service() -> UploadService:
    """Upload service dependency; one file per request."""
    return UploadService(max_files=1)


async def process_conversion_request(
    request: Request,
    profile: ParameterProfile,
    settings: Settings,
    orchestrator: ConversionOrchestrator,
    upload_service: UploadService,
) -> StreamingResponse:
    """
    Run the upload, conversion and delivery phases for one request.

    Args:
        request: Incoming request with a multipart body
        profile: Parameter profile of the endpoint
        settings: Application settings
        orchestrator: Conversion orchestrator
        upload_service: Streaming upload service

    Returns:
        StreamingResponse with the converted file

    Raises:
        UploadError: If the upload is rejected
        ConversionError: If the conversion fails or times out
    """
    logger.bind(
        event="process_request",
        path=request.url.path,
        origin=request.headers.get("origin", "No origin header"),
        content_type=request.headers.get("content-type", "No content-type header"),
    ).info(f"Conversion request for profile {profile.name}")

    upload_dir = ensure_directory(settings.UPLOAD_DIR)
    upload = await upload_service.ingest(
        request.stream(),
        request.headers.get("content-type"),
        allocate_temp_path(upload_dir),
        settings.MAX_FILE_SIZE,
    )

    output_path = Path(f"{upload.saved_path}.{profile.extension}")
    try:
        outcome = await orchestrator.convert(
            upload.saved_path,
            output_path,
            profile.output_options,
            settings.CONVERSION_TIMEOUT_MS,
            extension=profile.extension,
        )
    except ConversionError:
        delete_file(output_path)
        raise

    download_name = build_download_name(upload.original_filename, profile.extension)
    delivery = ResultDelivery(chunk_size=settings.UPLOAD_CHUNK_SIZE)
    return delivery.deliver(outcome.output_path, download_name)


def _make_conversion_endpoint(profile: ParameterProfile):
    """Bind ``profile`` into a route handler."""

    async def convert_endpoint(
        request: Request,
        settings: Settings = Depends(get_settings),
        orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
        upload_service: UploadService = Depends(get_upload_service),
    ) -> StreamingResponse:
        return await process_conversion_request(request, profile, settings, orchestrator, upload_service)

    convert_endpoint.__name__ = f"convert_to_{profile.name.replace('-', '_')}"
    convert_endpoint.__doc__ = profile.description or f"Convert to {profile.name} format"
    return convert_endpoint


def register_conversion_routes(target: APIRouter, profiles: dict[str, ParameterProfile]) -> None:
    """
    Add one POST route per profile, plus the short ``/<profile>`` alias.

    Args:
        target: Router to register on
        profiles: Profiles to expose
    """
    for name, profile in profiles.items():
        endpoint = _make_conversion_endpoint(profile)
        path = endpoint_path(name)
        target.add_api_route(
            path,
            endpoint,
            methods=["POST"],
            response_class=StreamingResponse,
            responses=_ERROR_RESPONSES,
            summary=profile.description,
        )
        if path != f"/{name}":
            target.add_api_route(
                f"/{name}",
                endpoint,
                methods=["POST"],
                response_class=StreamingResponse,
                include_in_schema=False,
            )


@router.get("/endpoints", response_model=list[EndpointInfo])
async def get_endpoints() -> list[dict]:
    """List available conversion endpoints."""
    return list_endpoints()


register_conversion_routes(router, PROFILES)
