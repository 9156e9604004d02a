from __future__ import annotations

import logging
import secrets
from datetime import date
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from flask import (
    Blueprint,
    Response,
    current_app,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from .errors import AuthError, RemoteError, ValidationError
from .models import NOTE_COLORS, MoodCategory
from .runtime import StoreRuntime
from .services.gateway import MediaUpload
from .services.store import AppStore
from .utils.dashboard import MOOD_EMOJI, daily_question, days_together, mood_feedback, time_left

main_bp = Blueprint('main', __name__)

logger = logging.getLogger(__name__)

UPLOAD_TIMEOUT = 120.0


def _runtime() -> StoreRuntime:
    return current_app.store_runtime


def _current_store() -> Optional[AppStore]:
    """Return the store bound to this browser session, resuming it if needed."""

    key = session.get('store_key')
    if not key or 'user' not in session:
        return None

    runtime = _runtime()
    store = runtime.store_for(key)
    if store is not None and store.is_authenticated:
        return store

    tokens = session.get('tokens') or {}
    store = runtime.open_store(key)
    try:
        runtime.run(store.resume(tokens.get('access_token', ''), tokens.get('refresh_token', '')))
    except (AuthError, RemoteError) as exc:
        logger.info('views.resume_failed: %s', exc)
        runtime.close_store(key)
        session.clear()
        return None
    return store


def _require_login() -> str | None:
    store = _current_store()
    if store is None:
        flash('Inicia sesión para continuar.', 'warning')
        return url_for('main.login')
    _sync_tokens(store)
    g.store = store
    return None


def _sync_tokens(store: AppStore) -> None:
    """Keep the cookie session on the latest tokens after a refresh."""

    identity = store.identity
    if identity is None:
        return
    tokens = {
        'access_token': identity.access_token,
        'refresh_token': identity.refresh_token,
    }
    if session.get('tokens') != tokens:
        session['tokens'] = tokens
        session.modified = True


def login_required(view):
    """Decorator ensuring the user is authenticated before accessing a view."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        redirect_url = _require_login()
        if redirect_url:
            return redirect(redirect_url)
        return view(*args, **kwargs)

    return wrapped


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _error(exc: AuthError | RemoteError | ValidationError) -> Tuple[Dict[str, Any], int]:
    return {'error': exc.message}, exc.status_code


def _accepted(collection: str, key: Optional[str] = None) -> Tuple[Dict[str, Any], int]:
    """Snapshot a collection right after an optimistic operation was dispatched."""

    items = _runtime().call(g.store.view, collection)
    return {key or collection: items}, 202


def _remember_session(store: AppStore, key: str) -> None:
    identity = store.identity
    session['user'] = {
        'id': identity.user_id,
        'email': identity.email,
        'name': identity.display_name,
    }
    session['tokens'] = {
        'access_token': identity.access_token,
        'refresh_token': identity.refresh_token,
    }
    session['store_key'] = key
    session.modified = True


def _discard_store() -> None:
    runtime = _runtime()
    store = runtime.close_store(session.get('store_key'))
    if store is not None:
        runtime.run(store.logout())


# --- Auth ----------------------------------------------------------------


@main_bp.route('/login', methods=['GET', 'POST'])
def login() -> str | Response:
    if request.method == 'POST':
        email = request.form.get('email', '').strip()
        password = request.form.get('password', '')
        if not email or not password:
            flash('Introduce tu correo y contraseña.', 'warning')
            return render_template('login.html')

        _discard_store()
        runtime = _runtime()
        key = secrets.token_urlsafe(24)
        store = runtime.open_store(key)
        try:
            identity = runtime.run(store.login(email, password))
        except (AuthError, RemoteError) as exc:
            runtime.close_store(key)
            flash(exc.message, 'danger')
            return render_template('login.html')

        _remember_session(store, key)
        flash(f'¡Hola, {identity.display_name}! ❤️', 'success')
        return redirect(url_for('main.index'))

    return render_template('login.html')


@main_bp.route('/signup', methods=['POST'])
def signup() -> str | Response:
    email = request.form.get('email', '').strip()
    password = request.form.get('password', '')
    runtime = _runtime()
    try:
        runtime.run(runtime.auth_gateway().sign_up(email, password))
    except (AuthError, RemoteError) as exc:
        flash(exc.message, 'danger')
        return render_template('login.html')

    flash('¡Cuenta creada! Revisa tu correo y luego inicia sesión.', 'success')
    return redirect(url_for('main.login'))


@main_bp.route('/logout')
def logout() -> Response:
    _discard_store()
    session.clear()
    flash('Has cerrado sesión.', 'info')
    return redirect(url_for('main.login'))


# --- Home ----------------------------------------------------------------


def _home_summary(store: AppStore) -> Dict[str, Any]:
    countdown = store.countdown()
    last_mood = store.last_mood()
    today_mood = store.today_mood()
    today = date.today()
    return {
        'greeting': f'Hola, {store.identity.display_name} ❤️',
        'theme': store.theme,
        'countdown': {
            'title': countdown.title,
            'date': countdown.date.isoformat(),
            'remaining': time_left(countdown.date).as_dict(),
        },
        'days_together': days_together(today),
        'streak': store.streak_count(),
        'last_mood': {'mood': last_mood.value, 'emoji': MOOD_EMOJI[last_mood]},
        'today_mood': today_mood.mood.value if today_mood else None,
        'question': daily_question(today),
        'music': store.settings.get('music'),
        'next_date': store.settings.get('next_date'),
        'notes': store.view('notes'),
    }


@main_bp.route('/')
@login_required
def index() -> Dict[str, Any]:
    return _runtime().call(_home_summary, g.store)


@main_bp.route('/api/notices')
@login_required
def notices() -> Dict[str, Any]:
    drained = _runtime().call(g.store.drain_notices)
    return {'notices': [{'level': n.level, 'message': n.message} for n in drained]}


@main_bp.route('/api/refresh', methods=['POST'])
@login_required
def refresh() -> Dict[str, Any]:
    _runtime().run(g.store.refresh())
    return {'ok': True}


# --- Moods ---------------------------------------------------------------


@main_bp.route('/api/moods', methods=['GET', 'POST'])
@login_required
def moods() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        return {'moods': _runtime().call(g.store.view, 'moods')}

    data = _payload()
    try:
        category = MoodCategory(data.get('mood'))
    except ValueError:
        return {'error': f"Estado de ánimo desconocido: {data.get('mood')!r}"}, 400

    _runtime().dispatch(g.store.add_mood(category, data.get('note') or None))
    body, status = _accepted('moods')
    body['feedback'] = mood_feedback(category)
    return body, status


# --- Wish list -----------------------------------------------------------


@main_bp.route('/api/wishlist', methods=['GET', 'POST'])
@login_required
def wishlist() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        return {'wishlist': _runtime().call(g.store.view, 'bucket_list')}

    data = _payload()
    try:
        item = _runtime().run(
            g.store.add_bucket_item(data.get('text', ''), data.get('category') or 'Otro', data.get('description'))
        )
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return item.model_dump(mode='json'), 201


@main_bp.route('/api/wishlist/<item_id>/toggle', methods=['POST'])
@login_required
def toggle_wish(item_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.toggle_bucket_item(item_id))
    return _accepted('bucket_list', 'wishlist')


@main_bp.route('/api/wishlist/<item_id>', methods=['DELETE'])
@login_required
def delete_wish(item_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.delete_bucket_item(item_id))
    return _accepted('bucket_list', 'wishlist')


# --- Coupons -------------------------------------------------------------


@main_bp.route('/api/coupons', methods=['GET', 'POST'])
@login_required
def coupons() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        return {'coupons': _runtime().call(g.store.view, 'coupons')}

    try:
        coupon = _runtime().run(g.store.add_coupon(_payload().get('title', '')))
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return coupon.model_dump(mode='json'), 201


@main_bp.route('/api/coupons/<coupon_id>/redeem', methods=['POST'])
@login_required
def redeem_coupon(coupon_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.redeem_coupon(coupon_id))
    return _accepted('coupons')


@main_bp.route('/api/coupons/<coupon_id>', methods=['DELETE'])
@login_required
def delete_coupon(coupon_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.delete_coupon(coupon_id))
    return _accepted('coupons')


# --- Milestones ----------------------------------------------------------


@main_bp.route('/api/milestones', methods=['GET', 'POST'])
@login_required
def milestones() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        return {'milestones': _runtime().call(g.store.view, 'milestones')}

    try:
        milestone = _runtime().run(g.store.add_milestone(_payload()))
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return milestone.model_dump(mode='json'), 201


# --- Notes ---------------------------------------------------------------


@main_bp.route('/api/notes', methods=['GET', 'POST'])
@login_required
def notes() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        return {'notes': _runtime().call(g.store.view, 'notes')}

    data = _payload()
    color = data.get('color') or 'yellow'
    if color not in NOTE_COLORS:
        return {'error': f'Color de nota desconocido: {color}'}, 400
    try:
        note = _runtime().run(g.store.add_note(data.get('content', ''), color))
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return note.model_dump(mode='json'), 201


@main_bp.route('/api/notes/<note_id>', methods=['DELETE'])
@login_required
def delete_note(note_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.delete_note(note_id))
    return _accepted('notes')


# --- Messages ------------------------------------------------------------


@main_bp.route('/api/messages', methods=['GET', 'POST'])
@login_required
def messages() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        # Opening the chat marks the partner's messages as read.
        _runtime().dispatch(g.store.mark_messages_read())
        return {'messages': _runtime().call(g.store.view, 'messages')}

    content = (_payload().get('content') or '').strip()
    if not content:
        return {'error': 'El mensaje está vacío.'}, 400
    _runtime().dispatch(g.store.send_message(content))
    return _accepted('messages')


# --- Settings ------------------------------------------------------------


@main_bp.route('/api/settings')
@login_required
def settings_view() -> Dict[str, Any]:
    store = g.store
    return {'settings': _runtime().call(lambda: dict(store.settings))}


@main_bp.route('/api/settings/<key>', methods=['PUT'])
@login_required
def update_setting(key: str) -> Tuple[Dict[str, Any], int]:
    data = _payload()
    if 'value' not in data:
        return {'error': 'Falta el valor.'}, 400
    store = g.store
    _runtime().dispatch(store.update_setting(key, data['value']))
    return {'settings': _runtime().call(lambda: dict(store.settings))}, 202


@main_bp.route('/api/theme', methods=['POST'])
@login_required
def toggle_theme() -> Dict[str, Any]:
    return {'theme': _runtime().call(g.store.toggle_theme)}


# --- Gallery -------------------------------------------------------------


@main_bp.route('/api/folders', methods=['GET', 'POST'])
@login_required
def folders() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        parent_id = request.args.get('parent_id') or None
        items = _runtime().run(g.store.load_folders(parent_id))
        return {'folders': [folder.model_dump(mode='json') for folder in items]}

    data = _payload()
    try:
        folder = _runtime().run(g.store.create_folder(data.get('name', ''), data.get('parent_id') or None))
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return folder.model_dump(mode='json'), 201


@main_bp.route('/api/folders/<folder_id>', methods=['DELETE'])
@login_required
def delete_folder(folder_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.delete_folder(folder_id))
    return _accepted('folders')


@main_bp.route('/api/memories', methods=['GET', 'POST'])
@login_required
def memories() -> Dict[str, Any] | Tuple[Dict[str, Any], int]:
    if request.method == 'GET':
        folder_id = request.args.get('folder_id') or None
        items = _runtime().run(g.store.load_memories(folder_id))
        return {'memories': [memory.model_dump(mode='json') for memory in items]}

    data = request.form
    upload = None
    file = request.files.get('file')
    if file and file.filename:
        upload = MediaUpload(
            filename=secure_filename(file.filename),
            content=file.read(),
            content_type=file.mimetype or 'application/octet-stream',
        )

    try:
        memory = _runtime().run(
            g.store.add_memory(
                upload,
                data.get('title', ''),
                data.get('description', ''),
                data.get('date') or None,
                data.get('folder_id') or None,
                data.get('external_url') or None,
            ),
            timeout=UPLOAD_TIMEOUT,
        )
    except (ValidationError, RemoteError, AuthError) as exc:
        return _error(exc)
    return memory.model_dump(mode='json'), 201


@main_bp.route('/api/memories/<memory_id>', methods=['DELETE'])
@login_required
def delete_memory(memory_id: str) -> Tuple[Dict[str, Any], int]:
    _runtime().dispatch(g.store.delete_memory(memory_id))
    return _accepted('memories')


# --- Errors --------------------------------------------------------------


@main_bp.app_errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception('views.unhandled_error')
    return render_template('fallback.html'), 500
