import logging
import os
import uuid
from io import BytesIO
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import OrchestrationError
from pipeline import PortraitPipeline
from settings import load_settings

logger = logging.getLogger("stage_portrait")

settings = load_settings()
logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

# Long side cap for the photo sent to the backend
MAX_SIDE = 1600
MAX_UPLOAD_BYTES = 12 * 1024 * 1024


class PortraitFields(BaseModel):
    gender: str
    position: str
    band_genre: str
    expression: str
    stage: str


class SubmitResponse(BaseModel):
    success: bool
    message: str
    imageUrl: Optional[str] = None


def prepare_subject_image(img_bytes: bytes, out_dir: str) -> str:
    """Decode the captured photo, drop EXIF rotation, cap its size and store it as PNG."""
    try:
        img = Image.open(BytesIO(img_bytes))
        img = ImageOps.exif_transpose(img).convert("RGB")
    except Image.DecompressionBombError:
        raise HTTPException(status_code=400, detail="Image dimensions too large")
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=400, detail="Invalid image upload. Expect PNG or JPEG.")

    w, h = img.size
    if max(w, h) > MAX_SIDE:
        scale = MAX_SIDE / float(max(w, h))
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, f"{uuid.uuid4().hex}.png")
    img.save(path, format="PNG")
    return path


_pipeline: Optional[PortraitPipeline] = None


def get_pipeline() -> PortraitPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = PortraitPipeline(settings)
    return _pipeline


app = FastAPI(title="Stage Portrait Booth API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/submit", response_model=SubmitResponse)
async def submit(
    image: Optional[UploadFile] = File(None),
    fullName: str = Form(""),
    email: str = Form(""),
    gender: str = Form(...),
    position: str = Form(...),
    setPanggung: str = Form(...),
    expression: str = Form(...),
    bandGenre: str = Form(...),
    selectedFrame: Optional[str] = Form(None),
    pipeline: PortraitPipeline = Depends(get_pipeline),
):
    if image is None:
        raise HTTPException(status_code=400, detail="No image uploaded")
    img_bytes = await image.read()
    if not img_bytes:
        raise HTTPException(status_code=400, detail="Empty image payload")
    if len(img_bytes) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image too large (max 12MB)")

    fields = PortraitFields(
        gender=gender,
        position=position,
        band_genre=bandGenre,
        expression=expression,
        stage=setPanggung,
    )
    logger.info("/submit name=%s frame=%s fields=%s img_len=%s", fullName, selectedFrame, fields.model_dump(), len(img_bytes))

    subject_path = await run_in_threadpool(prepare_subject_image, img_bytes, settings.upload_dir)
    try:
        result = await pipeline.generate(subject_path, selectedFrame or None, fields.model_dump())
    except OrchestrationError as e:
        logger.error("/submit failed at stage=%s: %s", e.stage, e)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "An error occurred during image processing. Please try again.",
                "error": e.message,
                "stage": e.stage,
            },
        )
    finally:
        try:
            os.remove(subject_path)
        except OSError as e:
            logger.warning("Failed to remove temporary file %s: %s", subject_path, e)

    return SubmitResponse(success=True, message="Portrait generated successfully!", imageUrl=result.image_url)
