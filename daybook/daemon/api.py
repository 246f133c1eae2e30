"""HTTP API for the daybook daemon."""

from datetime import date

from aiohttp import web
from loguru import logger

from .error_handling import InvalidTransition, NotFound, ShuttingDown, StorageError, TooLarge
from .models import NoteId


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""
    app = web.Application()
    app['daemon'] = daemon

    app.router.add_post('/notes', handle_create_note)
    app.router.add_get('/notes', handle_list_notes)
    app.router.add_get('/notes/{day}/{seq}', handle_get_note)
    app.router.add_get('/search', handle_search)
    app.router.add_get('/attachments/{id}', handle_get_attachment)
    app.router.add_get('/attachments/{id}/artifact', handle_get_artifact)
    app.router.add_post('/attachments/{id}/retry', handle_retry_attachment)
    app.router.add_post('/upload', handle_upload)
    app.router.add_get('/uploads/{name}', handle_get_upload)
    app.router.add_get('/status', handle_status)
    app.router.add_get('/health', handle_health)

    app.middlewares.append(error_middleware)

    return app


def error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({'error': {'code': code, 'message': message}}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map daemon errors onto HTTP responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValueError as e:
        return error_response('invalid_request', str(e), 400)
    except NotFound as e:
        return error_response('not_found', str(e), 404)
    except InvalidTransition as e:
        return error_response('conflict', str(e), 409)
    except TooLarge as e:
        return error_response('too_large', str(e), 413)
    except ShuttingDown as e:
        return error_response('unavailable', str(e), 503)
    except StorageError as e:
        logger.error(f"Storage error on {request.method} {request.path}: {e}")
        return error_response('storage_error', str(e), 503)
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
        return error_response('internal_error', str(e), 500)


async def handle_create_note(request: web.Request) -> web.Response:
    """Handle note creation."""
    notebook = request.app['daemon'].notebook

    try:
        data = await request.json()
    except ValueError:
        raise ValueError("request body must be JSON") from None

    text = data.get('text') if isinstance(data, dict) else data
    if not isinstance(text, str):
        raise ValueError("text is required")

    note = await notebook.add_note(text)
    return web.json_response(note.to_dict(), status=201)


async def handle_list_notes(request: web.Request) -> web.Response:
    """List the notes of one day (today by default)."""
    notebook = request.app['daemon'].notebook

    day_param = request.query.get('day')
    day = date.fromisoformat(day_param) if day_param else notebook.store.today()

    notes = await notebook.read_day(day)
    return web.json_response({
        'day': day.isoformat(),
        'notes': [n.to_dict() for n in notes]
    })


async def handle_get_note(request: web.Request) -> web.Response:
    notebook = request.app['daemon'].notebook
    note_id = NoteId.parse(f"{request.match_info['day']}/{request.match_info['seq']}")
    note = await notebook.get_note(note_id)
    return web.json_response(note.to_dict())


async def handle_search(request: web.Request) -> web.Response:
    """Handle search requests."""
    notebook = request.app['daemon'].notebook

    query = request.query.get('q', '').strip()
    if not query:
        raise ValueError("query parameter q is required")

    limit_param = request.query.get('limit')
    limit = int(limit_param) if limit_param else None
    if limit is not None and limit < 1:
        raise ValueError("limit must be positive")

    notes = await notebook.search(query, limit=limit)
    return web.json_response({
        'query': query,
        'results': [n.to_dict() for n in notes]
    })


async def handle_get_attachment(request: web.Request) -> web.Response:
    notebook = request.app['daemon'].notebook
    attachment = notebook.get_attachment(request.match_info['id'])
    return web.json_response(attachment.to_dict())


async def handle_get_artifact(request: web.Request) -> web.StreamResponse:
    """Stream the captured artifact of an attachment."""
    notebook = request.app['daemon'].notebook
    path = notebook.artifact_path(request.match_info['id'])
    return web.FileResponse(path)


async def handle_retry_attachment(request: web.Request) -> web.Response:
    notebook = request.app['daemon'].notebook
    attachment = await notebook.retry_attachment(request.match_info['id'])
    return web.json_response(attachment.to_dict(), status=202)


async def _part_chunks(part):
    while True:
        chunk = await part.read_chunk()
        if not chunk:
            break
        yield chunk


async def handle_upload(request: web.Request) -> web.Response:
    """Store the first file of a multipart upload and return where to fetch it."""
    notebook = request.app['daemon'].notebook

    if not request.content_type.startswith('multipart/'):
        raise ValueError("upload must be multipart/form-data")

    reader = await request.multipart()
    async for part in reader:
        filename = getattr(part, 'filename', None)
        if not filename:
            continue
        path = await notebook.save_upload(filename, _part_chunks(part))
        return web.json_response(
            {'name': path.name, 'url': f"/uploads/{path.name}"},
            status=201
        )

    raise ValueError("upload contains no file")


async def handle_get_upload(request: web.Request) -> web.StreamResponse:
    notebook = request.app['daemon'].notebook
    return web.FileResponse(notebook.upload_path(request.match_info['name']))


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(request.app['daemon'].get_status())


async def handle_health(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    accepting = daemon.notebook.accepting
    return web.json_response(
        {'status': 'ok' if accepting else 'stopping'},
        status=200 if accepting else 503
    )
