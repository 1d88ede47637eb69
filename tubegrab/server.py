"""The aiohttp application exposing the conversion API and the progress stream."""
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Union

import aiofiles
from aiohttp import web
from pydantic import BaseModel, ValidationError, field_validator

from .config import Settings
from .controller import AppController
from .exceptions import (
    DependencyError, InvalidRequestError, QueueFullError, RateLimitExceeded, URLExtractionError
)
from .formatting import content_disposition, guess_media_type
from .jobs import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey('controller', AppController)
CHUNK_SIZE = 256 * 1024


class ConvertRequest(BaseModel):
    """Body of POST /api/convert."""
    url: str
    format: str
    quality: Optional[Union[int, str]] = None

    @field_validator('quality')
    @classmethod
    def validate_quality(cls, value: Optional[Union[int, str]]) -> Optional[str]:
        if value is None or value == '':
            return None
        text = str(value).strip().rstrip('kKpP')
        if not text.isdigit() or int(text) <= 0:
            raise ValueError("quality must be a positive number")
        return text


def json_error(message: str, status: int, headers: Optional[dict] = None) -> web.Response:
    return web.json_response({'error': message}, status=status, headers=headers)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Maps service exceptions onto JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InvalidRequestError as e:
        return json_error(str(e), 400)
    except RateLimitExceeded as e:
        return json_error(str(e), 429, headers={'Retry-After': str(int(e.retry_after) + 1)})
    except QueueFullError as e:
        return json_error(str(e), 503)
    except DependencyError as e:
        logger.error(f"{request.path}: {e}")
        return json_error("Media tool unavailable. Please try again later.", 503)
    except URLExtractionError as e:
        return json_error(f"Failed to get info: {e}", 500)
    except Exception:
        logger.exception(f"Unhandled error serving {request.method} {request.path}")
        return json_error("Internal server error", 500)


def client_key(request: web.Request) -> str:
    """Identifies a client by the first X-Forwarded-For hop, or the peer address."""
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded.strip():
        return forwarded.split(',')[0].strip()
    return request.remote or 'unknown'


async def health(request: web.Request) -> web.Response:
    return web.json_response(request.app[CONTROLLER_KEY].health())


async def info(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    url = request.query.get('url')
    if not url:
        raise InvalidRequestError("URL required")
    controller.check_rate_limit(client_key(request))
    data = await controller.fetch_info(url)
    return web.json_response({'success': True, 'data': data})


async def convert(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Invalid JSON body")
    if not isinstance(body, dict) or not body.get('url') or not body.get('format'):
        raise InvalidRequestError("Missing fields")
    try:
        payload = ConvertRequest.model_validate(body)
    except ValidationError as e:
        error_details = e.errors()[0]
        field, msg = error_details['loc'][0], error_details['msg']
        raise InvalidRequestError(f"Error in field '{field}': {msg}")

    controller.check_rate_limit(client_key(request))
    job = controller.submit(payload.url, payload.format.lower(), payload.quality)
    return web.json_response({'success': True, 'downloadId': job.id})


async def progress(request: web.Request) -> web.StreamResponse:
    """Streams job snapshots as server-sent events until the job ends or the client leaves."""
    controller = request.app[CONTROLLER_KEY]
    job_id = request.match_info['job_id']
    interval = controller.settings.progress_interval_seconds

    response = web.StreamResponse(headers={
        'Content-Type': 'text/event-stream',
        'Cache-Control': 'no-cache',
    })
    await response.prepare(request)

    try:
        while True:
            job = controller.store.get(job_id)
            payload = job.to_public_dict() if job else {'id': job_id, 'status': 'not_found'}
            await response.write(f"data: {json.dumps(payload)}\n\n".encode('utf-8'))
            if job is None or job.status in TERMINAL_STATUSES:
                break
            await asyncio.sleep(interval)
    except ConnectionError:
        # The job keeps running; only this stream stops.
        logger.debug(f"[{job_id}] Progress stream closed by client")
        return response

    await response.write_eof()
    return response


async def download(request: web.Request) -> web.StreamResponse:
    controller = request.app[CONTROLLER_KEY]
    job_id = request.match_info['job_id']
    job = controller.get_completed_job(job_id)
    if job is None or not await asyncio.to_thread(Path(job.file_path).is_file):
        return json_error("Not found", 404)

    file_path = Path(job.file_path)
    size = (await asyncio.to_thread(file_path.stat)).st_size
    response = web.StreamResponse(headers={
        'Content-Type': guess_media_type(job.filename),
        'Content-Disposition': content_disposition(job.filename),
    })
    response.content_length = size

    try:
        await response.prepare(request)
        async with aiofiles.open(file_path, 'rb') as f_in:
            while chunk := await f_in.read(CHUNK_SIZE):
                await response.write(chunk)
        await response.write_eof()
    except ConnectionError:
        logger.info(f"[{job_id}] Client aborted the download")
    finally:
        controller.schedule_removal(job_id)
    return response


def create_app(settings: Settings, controller: Optional[AppController] = None) -> web.Application:
    """Builds the aiohttp application and wires the controller into its lifecycle."""
    app = web.Application(middlewares=[error_middleware])
    app[CONTROLLER_KEY] = controller or AppController(settings)

    app.router.add_get('/api/health', health)
    app.router.add_get('/api/info', info)
    app.router.add_post('/api/convert', convert)
    app.router.add_get('/api/progress/{job_id}', progress)
    app.router.add_get('/api/download/{job_id}', download)

    async def on_startup(app: web.Application):
        await app[CONTROLLER_KEY].startup()

    async def on_cleanup(app: web.Application):
        await app[CONTROLLER_KEY].shutdown()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app
