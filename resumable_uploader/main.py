import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, FastAPI, Form, HTTPException, Request

from resumable_uploader.config import (
    Settings,
    build_redis_client,
    build_s3_client,
    build_session_client,
)
from resumable_uploader.exceptions import InvalidStateError, ValidationError
from resumable_uploader.services.checkpoint_store import CheckpointStore
from resumable_uploader.services.chunk_splitter import UploadSource
from resumable_uploader.services.cleanup_service import CleanupService
from resumable_uploader.services.transfer_manager import TransferManager

logger = logging.getLogger(__name__)


def _build_services(settings: Settings):
    redis_client = build_redis_client(settings)
    checkpoint_store = CheckpointStore(redis_client, settings.checkpoint_ttl_days)
    manager = TransferManager(
        build_session_client(settings, redis_client),
        settings.upload_config(),
        checkpoint_store,
    )
    s3_client = build_s3_client(settings) if settings.transport == "s3" else None
    cleanup_service = CleanupService(checkpoint_store, s3_client, settings.bucket_name)
    return manager, cleanup_service


def create_app(
    manager: Optional[TransferManager] = None,
    cleanup_service: Optional[CleanupService] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        nonlocal manager, cleanup_service
        if manager is None:
            settings = Settings.from_env()
            logging.basicConfig(
                level=settings.log_level,
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )
            manager, cleanup_service = _build_services(settings)
        app.state.transfer_manager = manager

        cleanup_task = None
        if cleanup_service is not None:
            cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

        yield

        # Shutdown
        await manager.shutdown()
        if cleanup_task is not None:
            cleanup_task.cancel()
            try:
                await cleanup_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Resumable Upload Agent", lifespan=lifespan)

    def get_manager(request: Request) -> TransferManager:
        return request.app.state.transfer_manager

    def get_transfer(request: Request, transfer_id: str):
        try:
            return get_manager(request).get(transfer_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Transfer not found")

    @app.post("/transfers", status_code=202)
    async def start_transfer(
        request: Request,
        path: str = Form(...),
        content_type: Optional[str] = Form(None),
    ):
        """Start uploading a local file"""
        if not os.path.isfile(path):
            raise HTTPException(status_code=400, detail=f"No such file: {path}")
        try:
            source = UploadSource.from_path(path, content_type)
            transfer = get_manager(request).submit(source)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return transfer.describe()

    @app.post("/transfers/restore", status_code=202)
    async def restore_transfer(request: Request, session_id: str = Body(..., embed=True)):
        """Resume a transfer left behind by a previous process"""
        try:
            transfer = await get_manager(request).restore(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Checkpoint not found")
        except (ValidationError, InvalidStateError, OSError) as e:
            raise HTTPException(status_code=409, detail=str(e))
        return transfer.describe()

    @app.get("/transfers")
    async def list_transfers(request: Request):
        """Get all transfers that have not finished"""
        transfers = get_manager(request).list_active()
        return {"transfers": [t.describe() for t in transfers]}

    @app.get("/transfers/{transfer_id}")
    async def get_transfer_status(request: Request, transfer_id: str):
        return get_transfer(request, transfer_id).describe()

    @app.post("/transfers/{transfer_id}/pause")
    async def pause_transfer(request: Request, transfer_id: str):
        """Pause an ongoing transfer"""
        get_transfer(request, transfer_id)
        try:
            transfer = get_manager(request).pause(transfer_id)
        except InvalidStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return transfer.describe()

    @app.post("/transfers/{transfer_id}/resume")
    async def resume_transfer(request: Request, transfer_id: str):
        """Resume a paused or failed transfer"""
        get_transfer(request, transfer_id)
        try:
            transfer = get_manager(request).resume(transfer_id)
        except InvalidStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return transfer.describe()

    @app.post("/transfers/{transfer_id}/cancel")
    async def cancel_transfer(request: Request, transfer_id: str):
        """Cancel a transfer and discard its progress"""
        get_transfer(request, transfer_id)
        try:
            transfer = await get_manager(request).cancel(transfer_id)
        except InvalidStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return transfer.describe()

    return app


app = create_app()
