# Run:
# uvicorn services.feedback.main:app --host 0.0.0.0 --port 3300 --reload
# Docs: http://127.0.0.1:3300/docs

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from libs.auth.power_user import PowerUserVerifier, require_power_user
from libs.config import Config
from libs.db import check_database, get_db, init_models
from libs.error_log import DEFAULT_QUERY_LIMIT, ErrorLogService
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.storage import AssetStorage, InvalidStorageKey, StorageError
from services.feedback.feedback_factory import PersistenceError, get_feedback_factory
from services.feedback.ingestion import FeedbackValidationError, ingest_feedback
from services.feedback.jobs import NotificationAdapters, NotificationHandlers
from services.feedback.schemas import (
    CreateTaskResponse,
    ErrorLogCreateResponse,
    ErrorLogListResponse,
    ErrorLogRequest,
    FeedbackCreateRequest,
    FeedbackCreateResponse,
    FeedbackListResponse,
    FeedbackUpdateRequest,
    LocalUploadResponse,
    MessageResponse,
    PresignedUrlRequest,
    PresignedUrlResponse,
    TempCommentRequest,
    UploadScreenshotDomRequest,
    UploadScreenshotDomResponse,
)
from services.feedback.types import LogSource
from services.feedback.worker import OutboxWorker

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def parse_int(value: Optional[str], default: int) -> int:
    """Lenient query parsing: anything that is not an integer becomes the default."""
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def clamp_pagination(page: Optional[str], limit: Optional[str]) -> tuple:
    """page >= 1, 1 <= limit <= 100."""
    page_value = max(1, parse_int(page, DEFAULT_PAGE))
    limit_value = min(MAX_LIMIT, max(1, parse_int(limit, DEFAULT_LIMIT)))
    return page_value, limit_value


def parse_feedback_id(raw: str) -> int:
    """Positive integer id or 400."""
    value = (raw or "").strip()
    # isdigit alone admits Unicode digits such as "²" that int() rejects
    if not (value.isascii() and value.isdigit()) or int(value) < 1:
        raise HTTPException(status_code=400, detail="無効なフィードバックIDです")
    return int(value)


def get_error_log(request: Request) -> ErrorLogService:
    return request.app.state.error_log


def get_storage(request: Request) -> AssetStorage:
    return request.app.state.storage


def create_app(
    config: Optional[Config] = None,
    *,
    adapters: Optional[NotificationAdapters] = None,
    session_factory: Optional[sessionmaker] = None,
    engine: Optional[AsyncEngine] = None,
    storage: Optional[AssetStorage] = None,
    power_user_verifier: Optional[PowerUserVerifier] = None,
) -> FastAPI:
    """
    Build the feedback service app.

    Args:
        config: Service configuration (reads the environment when omitted)
        adapters: Outbound clients for the notification jobs
        session_factory: Async session factory; defaults to libs.db.AsyncSessionLocal
        engine: Engine used for table creation when AUTO_CREATE_TABLES is set
        storage: Screenshot storage backend
        power_user_verifier: Role lookup for admin routes

    Returns:
        Configured FastAPI application
    """
    from libs import db as db_module

    config = config or Config()
    session_factory = session_factory or db_module.AsyncSessionLocal
    engine = engine or db_module.engine
    adapters = adapters or NotificationAdapters.from_config(config)

    async def health_check():
        await check_database(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.AUTO_CREATE_TABLES:
            await init_models(engine)
        os.makedirs(config.LOCAL_UPLOAD_DIR, exist_ok=True)
        worker = app.state.worker
        if config.OUTBOX_WORKER_ENABLED:
            worker.start()
        yield
        await worker.stop()
        await engine.dispose()

    factory = FastAPIServiceFactory(
        ServiceAppConfig(
            title="Feedback Suite",
            description="Collect page feedback and fan it out to Slack, GitHub and the task server.",
            service_name=config.SERVICE_NAME,
            version=config.SERVICE_VERSION,
            health_check=health_check,
            lifespan=lifespan,
        )
    )
    app = factory.create_app()

    feedback_received = factory.add_business_metric(
        "feedback_received_total", "Feedback submissions stored"
    )
    job_counter = factory.add_business_metric(
        "notification_jobs_total", "Notification jobs finished", ["kind", "status"]
    )

    worker = OutboxWorker(
        session_factory,
        NotificationHandlers(adapters, config),
        config,
        job_counter=job_counter,
    )
    app.state.config = config
    app.state.worker = worker
    app.state.adapters = adapters
    app.state.session_factory = session_factory
    app.state.error_log = ErrorLogService(config.ERROR_LOG_CAPACITY)
    app.state.storage = storage or AssetStorage(config)
    app.state.power_user_verifier = power_user_verifier or PowerUserVerifier(config)

    if session_factory is not db_module.AsyncSessionLocal:

        async def override_get_db():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db

    _register_routes(app)

    # Registered last so PUT /uploads/local wins over the static mount
    app.mount(
        "/uploads",
        StaticFiles(directory=config.LOCAL_UPLOAD_DIR, check_dir=False),
        name="uploads",
    )
    app.state.feedback_received = feedback_received
    return app


def _register_routes(app: FastAPI) -> None:
    factory = get_feedback_factory()

    @app.get("/")
    async def root():
        return {"service": app.state.service_name, "status": "running"}

    # ----- feedback -----

    @app.post("/feedback", response_model=FeedbackCreateResponse)
    async def submit_feedback(
        body: FeedbackCreateRequest,
        background_tasks: BackgroundTasks,
        request: Request,
        db: AsyncSession = Depends(get_db),
        error_log: ErrorLogService = Depends(get_error_log),
    ):
        try:
            result = await ingest_feedback(db, body, request.app.state.config)
        except FeedbackValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PersistenceError as e:
            error_log.record(
                LogSource.API.value,
                "error",
                "フィードバック保存エラー",
                details=str(e),
                user_agent=body.userAgent,
            )
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")

        request.app.state.feedback_received.inc()
        # Runs after the response has been sent
        background_tasks.add_task(request.app.state.worker.wake)
        return FeedbackCreateResponse(success=True, id=result.feedback_id, message="フィードバックを受信しました")

    @app.get("/feedback/list", response_model=FeedbackListResponse)
    async def list_feedback(
        request: Request,
        page: Optional[str] = None,
        limit: Optional[str] = None,
        db: AsyncSession = Depends(get_db),
    ):
        if request.app.state.config.FEEDBACK_LIST_REQUIRE_POWER_USER:
            await require_power_user(request)

        page_value, limit_value = clamp_pagination(page, limit)
        try:
            result = await factory.get_paginated_feedback(db, page_value, limit_value)
            stats = await factory.get_feedback_stats(db)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"フィードバックの取得に失敗しました: {str(e)}")

        feedbacks = [f.to_api(include_dom=False) for f in result["feedbacks"]]
        return FeedbackListResponse(
            success=True,
            feedbacks=feedbacks,
            count=len(feedbacks),
            total=result["total"],
            page=result["page"],
            limit=result["limit"],
            totalPages=result["totalPages"],
            stats=stats,
        )

    @app.post("/feedback/upload-screenshot-dom", response_model=UploadScreenshotDomResponse)
    async def upload_screenshot_dom(
        body: UploadScreenshotDomRequest,
        db: AsyncSession = Depends(get_db),
        storage: AssetStorage = Depends(get_storage),
    ):
        if not body.screenshot or not body.domTree or not body.pageInfo or not body.timestamp:
            raise HTTPException(
                status_code=400,
                detail="必須項目が不足しています (screenshot, domTree, pageInfo, timestamp)",
            )
        page_url = body.pageInfo.get("url")
        if not page_url:
            raise HTTPException(status_code=400, detail="ページ情報が不完全です (url)")

        try:
            file_name = f"screenshot_{int(time.time() * 1000)}.png"
            screenshot_url = await storage.upload_base64(body.screenshot, file_name, "image/png")
        except StorageError as e:
            logger.error(f"Screenshot upload failed: {e}")
            raise HTTPException(status_code=500, detail="スクリーンショットのアップロードに失敗しました")

        try:
            screenshot_id = await factory.insert_screenshot_data(
                db,
                screenshot_url=screenshot_url,
                dom_tree=body.domTree,
                tab_url=page_url,
                tab_title=body.pageInfo.get("title") or "",
                timestamp=body.timestamp,
                page_info=body.pageInfo,
            )
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")

        logger.info(f"Stored screenshot data {screenshot_id} for {page_url}")
        return UploadScreenshotDomResponse(
            success=True,
            id=screenshot_id,
            message="スクリーンショットとDOMツリーをアップロードしました",
        )

    @app.get("/feedback/{feedback_id}")
    async def get_feedback(feedback_id: str, db: AsyncSession = Depends(get_db)):
        fid = parse_feedback_id(feedback_id)
        try:
            record = await factory.get_feedback_by_id(db, fid)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if record is None:
            raise HTTPException(status_code=404, detail="フィードバックが見つかりません")
        return record.to_api()

    @app.delete("/feedback/{feedback_id}", response_model=MessageResponse)
    async def delete_feedback(feedback_id: str, db: AsyncSession = Depends(get_db)):
        fid = parse_feedback_id(feedback_id)
        try:
            deleted = await factory.delete_feedback(db, fid)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if not deleted:
            raise HTTPException(status_code=404, detail="フィードバックが見つかりません")
        return MessageResponse(success=True, message="フィードバックを削除しました")

    @app.patch("/feedback/{feedback_id}", response_model=MessageResponse)
    async def update_feedback(
        feedback_id: str, body: FeedbackUpdateRequest, db: AsyncSession = Depends(get_db)
    ):
        fid = parse_feedback_id(feedback_id)
        if not isinstance(body.comment, str):
            raise HTTPException(status_code=400, detail="コメントが正しく指定されていません")
        try:
            updated = await factory.update_feedback_comment(db, fid, body.comment)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if not updated:
            raise HTTPException(status_code=404, detail="フィードバックが見つかりません")
        return MessageResponse(success=True, message="コメントを更新しました")

    @app.post("/feedback/{feedback_id}/create-task", response_model=CreateTaskResponse)
    async def create_task(feedback_id: str, request: Request, db: AsyncSession = Depends(get_db)):
        fid = parse_feedback_id(feedback_id)
        config: Config = request.app.state.config
        if not config.task_server_enabled():
            raise HTTPException(status_code=503, detail="タスク管理サーバのAPIキーが設定されていません")

        try:
            record = await factory.get_feedback_by_id(db, fid)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if record is None:
            raise HTTPException(status_code=404, detail="フィードバックが見つかりません")
        if record.screenshot_data is None:
            raise HTTPException(status_code=404, detail="スクリーンショットデータが見つかりません")

        task_server = request.app.state.adapters.task_server
        result = await task_server.create_task_from_feedback(
            record, config.TASK_SERVER_API_KEY, user_name=record.user_name
        )
        if not result.success:
            logger.error(f"Task creation failed for feedback {fid}: {result.error}")
            raise HTTPException(status_code=500, detail=result.error or "タスクの作成に失敗しました")

        return CreateTaskResponse(
            success=True,
            taskId=result.task_id,
            taskUrl=result.task_url,
            message="タスクが作成されました",
        )

    # ----- screenshots -----

    @app.get("/screenshot/{screenshot_id}")
    async def get_screenshot(screenshot_id: str, db: AsyncSession = Depends(get_db)):
        try:
            record = await factory.get_screenshot_data(db, screenshot_id)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if record is None:
            raise HTTPException(status_code=404, detail="スクリーンショットデータが見つかりません")

        data = record.to_api(include_dom=False)
        data["tempComment"] = record.temp_comment or ""
        data.pop("updatedAt", None)
        return data

    @app.get("/screenshot/{screenshot_id}/temp-comment")
    async def get_temp_comment(screenshot_id: str, db: AsyncSession = Depends(get_db)):
        try:
            record = await factory.get_screenshot_data(db, screenshot_id)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if record is None:
            raise HTTPException(status_code=404, detail="スクリーンショットデータが見つかりません")
        return {"id": record.id, "tempComment": record.temp_comment or ""}

    @app.post("/screenshot/{screenshot_id}/temp-comment")
    async def save_temp_comment(
        screenshot_id: str, body: TempCommentRequest, db: AsyncSession = Depends(get_db)
    ):
        if not isinstance(body.tempComment, str):
            raise HTTPException(status_code=400, detail="一時コメントが正しく指定されていません")
        try:
            record = await factory.update_temp_comment(db, screenshot_id, body.tempComment or None)
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"サーバーエラーが発生しました: {str(e)}")
        if record is None:
            raise HTTPException(status_code=404, detail="スクリーンショットデータが見つかりません")
        return {
            "id": record.id,
            "tempComment": record.temp_comment or "",
            "updatedAt": record.to_api()["updatedAt"],
            "message": "一時コメントを保存しました",
        }

    # ----- uploads -----

    @app.put("/uploads/local", response_model=LocalUploadResponse)
    async def upload_local(
        request: Request,
        fileName: Optional[str] = None,
        fileType: Optional[str] = None,
        key: Optional[str] = None,
        storage: AssetStorage = Depends(get_storage),
    ):
        key = key or f"temp/{int(time.time() * 1000)}.png"
        content = await request.body()
        logger.info(f"Local upload: file={fileName}, type={fileType or 'image/png'}, key={key}, size={len(content)}")
        try:
            file_url = await storage.save_local(key, content)
        except InvalidStorageKey as e:
            logger.error(f"Rejected upload key: {key}")
            raise HTTPException(status_code=400, detail=f"不正なファイルパスです: {str(e)}")
        except StorageError as e:
            raise HTTPException(status_code=500, detail=f"ファイルの保存に失敗しました: {str(e)}")
        return LocalUploadResponse(
            success=True, key=key, fileUrl=file_url, message="ファイルをローカルに保存しました"
        )

    @app.post("/s3/presigned-url", response_model=PresignedUrlResponse)
    async def presigned_url(body: PresignedUrlRequest, storage: AssetStorage = Depends(get_storage)):
        content_type = body.contentType or body.fileType
        if not body.fileName or not content_type:
            raise HTTPException(status_code=400, detail="ファイル名とファイルタイプは必須です")
        try:
            data = await storage.generate_presigned_url(body.fileName, content_type, body.feedbackId)
        except StorageError as e:
            raise HTTPException(status_code=500, detail=f"プリサインURLの生成に失敗しました: {str(e)}")
        return PresignedUrlResponse(success=True, **data)

    # ----- error log -----

    @app.post("/logs", response_model=ErrorLogCreateResponse)
    async def record_log(body: ErrorLogRequest, error_log: ErrorLogService = Depends(get_error_log)):
        if not body.source or not body.level or not body.message:
            raise HTTPException(status_code=400, detail="必須項目が不足しています (source, level, message)")
        entry = error_log.record(
            body.source,
            body.level,
            body.message,
            details=body.details,
            url=body.url,
            user_agent=body.userAgent,
        )
        return ErrorLogCreateResponse(success=True, id=entry.id, message="エラーログを記録しました")

    @app.get("/logs", response_model=ErrorLogListResponse)
    async def list_logs(
        limit: Optional[str] = None,
        source: Optional[str] = None,
        level: Optional[str] = None,
        _: bool = Depends(require_power_user),
        error_log: ErrorLogService = Depends(get_error_log),
    ):
        limit_value = parse_int(limit, DEFAULT_QUERY_LIMIT)
        if limit_value < 1:
            limit_value = DEFAULT_QUERY_LIMIT
        entries, total = error_log.query(limit=limit_value, source=source, level=level)
        return ErrorLogListResponse(
            success=True,
            logs=[e.to_dict() for e in entries],
            totalCount=total,
            limit=limit_value,
        )


app = create_app()
