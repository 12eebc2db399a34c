"""FastAPI application for the camera MJPEG streamer.

GET /stream で multipart/x-mixed-replace の MJPEG ストリームを配信し、
REST API でストリームの開始・停止・再起動と設定変更を受け付ける。
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from camera_mjpeg_stream.broadcaster import CONTENT_TYPE, STREAM_PREAMBLE, QueueSink
from camera_mjpeg_stream.config import (
    AppSettings,
    CameraSettingsUpdate,
    config_path_from_env,
    load_settings,
    save_settings,
)
from camera_mjpeg_stream.session import ACTIVE_STATES, StreamSession

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}


def _default_session_factory(settings: AppSettings) -> StreamSession:
    return StreamSession(settings.camera.to_config(), ffmpeg_path=settings.ffmpeg_path)


def create_app(
    settings: AppSettings | None = None,
    *,
    config_path: Path | None = None,
    session_factory: Callable[[AppSettings], StreamSession] = _default_session_factory,
) -> FastAPI:
    """アプリケーションを生成する.

    StreamSession は lifespan で 1 つだけ生成し、app.state.session に保持する。

    Args:
        settings: 設定 (省略時は config_path から読み込む)
        config_path: 設定ファイルのパス (省略時は環境変数 MJPEG_CONFIG)
        session_factory: 設定から StreamSession を作る関数
    """
    config_path = config_path or config_path_from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """アプリケーションのライフサイクル管理."""
        app.state.config_path = config_path
        app.state.settings = settings or load_settings(config_path)
        app.state.session = session_factory(app.state.settings)
        logger.info("camera-mjpeg-stream server starting")
        if app.state.settings.autostart:
            app.state.session.start()
        yield
        logger.info("camera-mjpeg-stream server shutting down")
        await app.state.session.aclose()

    app = FastAPI(
        title="camera-mjpeg-stream",
        description="Camera streaming via FFmpeg MJPEG + multipart/x-mixed-replace",
        version="0.1.0",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _session(request: Request) -> StreamSession:
    return request.app.state.session


def _register_routes(app: FastAPI) -> None:
    # ============================================================
    # MJPEG ストリーム
    # ============================================================

    @app.get("/stream")
    async def stream(request: Request) -> StreamingResponse:
        """MJPEG ストリーム配信.

        接続時に最新フレームがあれば即座に送る。停止中なら配信を開始する。
        """
        session = _session(request)
        sink = QueueSink()
        client = session.connect(sink)

        async def parts() -> AsyncIterator[bytes]:
            try:
                yield STREAM_PREAMBLE
                async for part in sink:
                    yield part
            finally:
                session.disconnect(client)
                logger.info("Stream client %d ended", client.client_id)

        return StreamingResponse(parts(), media_type=CONTENT_TYPE, headers=STREAM_HEADERS)

    # ============================================================
    # REST API: ストリーム制御
    # ============================================================

    @app.post("/stream/start")
    async def start_stream(request: Request) -> dict:
        session = _session(request)
        if session.state in ACTIVE_STATES:
            return {"message": "Stream is already running", "state": session.state.value}
        state = session.start()
        return {"message": "Stream started successfully", "state": state.value}

    @app.post("/stream/stop")
    async def stop_stream(request: Request) -> dict:
        session = _session(request)
        was_running = session.state in ACTIVE_STATES
        state = session.stop()
        message = "Stream stopped successfully" if was_running else "Stream is not running"
        return {"message": message, "state": state.value}

    @app.post("/stream/restart")
    async def restart_stream(request: Request) -> dict:
        state = _session(request).restart()
        return {"message": "Stream is restarting", "state": state.value}

    @app.get("/health")
    async def health(request: Request) -> dict:
        """ヘルスチェック + ストリーム状態."""
        return {"status": "running", **_session(request).status()}

    # ============================================================
    # REST API: 設定
    # ============================================================

    @app.get("/config")
    async def get_config(request: Request) -> dict:
        return request.app.state.settings.model_dump()

    @app.post("/config")
    async def update_config(req: CameraSettingsUpdate, request: Request) -> dict:
        """カメラ設定を更新して保存し、新しい設定でストリームを再起動する."""
        state = request.app.state
        try:
            settings = state.settings.with_camera_update(req)
            snapshot = settings.camera.to_config()
        except ValueError as e:
            return JSONResponse(status_code=422, content={"error": str(e)})

        try:
            save_settings(state.config_path, settings)
        except OSError as e:
            logger.exception("Error saving config to %s", state.config_path)
            return JSONResponse(status_code=500, content={"error": str(e)})

        state.settings = settings
        state.session.restart(snapshot)
        return {
            "message": "Configuration updated successfully. Stream is restarting with new settings.",
            "config": settings.model_dump(),
        }


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _settings = load_settings(config_path_from_env())
    uvicorn.run(create_app(_settings), host=_settings.host, port=_settings.port)
