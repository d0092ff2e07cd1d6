"""FastAPI application for Entry Parser."""

import logging

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from entry_parser.config import Settings, settings
from entry_parser.models import HealthResponse, ParseRequest
from entry_parser.resources import load_prompt, load_schema
from entry_parser.services.pipeline import ParsePipeline

logger = logging.getLogger(__name__)


def create_app(app_settings: Settings | None = None, pipeline: ParsePipeline | None = None) -> FastAPI:
    """
    Build the application.

    The prompt and schema are loaded here, once. A schema that cannot be
    loaded raises SchemaLoadError and the server does not start.
    """
    app_settings = app_settings or settings
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if pipeline is None:
        prompt = load_prompt(app_settings.prompt_path)
        schema = load_schema(app_settings.schema_path)
        pipeline = ParsePipeline(prompt=prompt, schema=schema, settings=app_settings)

    app = FastAPI(
        title="Entry Parser",
        description="Turns spoken or typed transaction descriptions into validated expense entries",
        version="0.1.0",
    )
    app.state.settings = app_settings
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            llm_model=app_settings.openai_llm_model,
            transcription_model=app_settings.openai_whisper_model,
        )

    @app.post("/parse")
    async def parse_entry(
        request: Request,
        audio: UploadFile | None = File(None),
        hint_text: str | None = Form(None),
        tz: str | None = Form(None),
    ):
        """Parse an audio clip and/or hint text into a validated entry."""
        contents = None
        filename = None
        if audio is not None:
            filename = audio.filename
            try:
                # One byte past the ceiling is enough to reject oversize uploads
                contents = await audio.read(app_settings.max_upload_bytes + 1)
            except Exception as e:
                logger.error(f"Failed to read upload {filename}: {e}")
                return JSONResponse(status_code=400, content={"error": "failed to read file"})
            finally:
                await audio.close()

        parse_request = ParseRequest(
            audio=contents or None,
            audio_filename=filename,
            hint_text=hint_text,
            tz=tz,
        )
        result = await request.app.state.pipeline.run(parse_request)

        if result.ok:
            return Response(content=result.payload, media_type="application/json")
        return JSONResponse(status_code=result.status_code, content=result.error_body())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings.log_config()
    uvicorn.run(
        "entry_parser.main:app",
        host=settings.api_host,
        port=settings.api_port,
    )
