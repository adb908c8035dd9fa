"""HTTP surface of the document modules plus the upload download route."""

from flask import Blueprint, g, jsonify, request, send_file

from auth import has_role, login_required, require_permission
from documents import (
    DocumentKind,
    DocumentRepository,
    serialize_category,
    serialize_document,
    serialize_review,
    serialize_version,
)
from errors import NotFound, ValidationFailed
from extensions import get_session, get_storage
from models import ADMIN_ROLE
from schemas import (
    BulkAction,
    BulkDelete,
    CategoryAction,
    CategoryCreate,
    DocumentCreate,
    DocumentUpdate,
    RecordAction,
    ReviewCreate,
    VersionCreate,
    parse_body,
)
from storage import content_type_for


def _archived_filter(raw):
    if raw is None or raw == '' or raw.lower() == 'false':
        return False
    if raw.lower() == 'true':
        return True
    if raw.lower() == 'all':
        return None
    raise ValidationFailed('archived must be true, false or all')


def _int_arg(name):
    raw = request.args.get(name)
    if raw in (None, ''):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailed(f'{name} must be an integer') from None


def create_document_blueprint(kind: DocumentKind) -> Blueprint:
    """Build the ``/api/<kind>`` blueprint for one document kind."""
    kind = DocumentKind(kind)
    bp = Blueprint(f'documents_{kind.name.lower()}', __name__, url_prefix=f'/api/{kind.value}')
    can_read = require_permission(kind.value, 'read')
    can_write = require_permission(kind.value, 'write')
    can_delete = require_permission(kind.value, 'delete')

    def repo():
        return DocumentRepository(get_session(), kind)

    def user_id():
        return g.current_user.id

    @bp.get('')
    @can_read
    def list_documents():
        docs = repo().list(
            archived=_archived_filter(request.args.get('archived')),
            category_id=_int_arg('categoryId'),
        )
        return jsonify([serialize_document(d) for d in docs])

    @bp.post('')
    @can_write
    def create_document():
        body = parse_body(DocumentCreate)
        doc = repo().create(body.model_dump(), user_id=user_id())
        return jsonify(serialize_document(doc)), 201

    @bp.put('')
    @can_write
    def bulk_update():
        body = parse_body(BulkAction)
        data = body.data.model_dump(exclude_none=True) if body.data else None
        count = repo().bulk_action(body.ids, body.action, data, user_id=user_id())
        return jsonify(message=f'{count} records updated', count=count)

    @bp.delete('')
    @can_delete
    def bulk_delete():
        body = parse_body(BulkDelete)
        is_admin = has_role(kind.value, ADMIN_ROLE) if body.permanent else False
        count = repo().bulk_delete(body.ids, body.permanent, user_id=user_id(), is_admin=is_admin)
        verb = 'deleted' if body.permanent else 'archived'
        return jsonify(message=f'{count} records {verb}', count=count)

    @bp.patch('')
    @can_write
    def category_action():
        body = parse_body(CategoryAction)
        if body.action == 'reorder-category':
            count = repo().reorder_category(body.category_id)
            return jsonify(message=f'Reordered {count} records in category', count=count)
        if body.new_category_id is None:
            raise ValidationFailed('Both current and new category IDs are required')
        count = repo().move_to_category(body.category_id, body.new_category_id)
        return jsonify(message=f'Moved {count} records to new category', count=count)

    @bp.get('/<int:record_id>')
    @can_read
    def get_document(record_id):
        return jsonify(serialize_document(repo().get(record_id)))

    @bp.put('/<int:record_id>')
    @can_write
    def update_document(record_id):
        body = parse_body(DocumentUpdate)
        doc = repo().update(record_id, body.model_dump(exclude_none=True), user_id=user_id())
        return jsonify(serialize_document(doc))

    @bp.delete('/<int:record_id>')
    @can_delete
    def delete_document(record_id):
        doc = repo().delete(record_id, user_id=user_id())
        return jsonify(message='Archived', document=serialize_document(doc))

    @bp.patch('/<int:record_id>')
    @can_write
    def record_action(record_id):
        body = parse_body(RecordAction)
        documents = repo()
        if body.action == 'reorder':
            if body.direction is None:
                raise ValidationFailed('Direction is required')
            moved = documents.reorder(record_id, body.direction)
            return jsonify(message='Reordered successfully' if moved else 'Already at the edge',
                           moved=moved)
        if body.action == 'toggle-highlight':
            doc = documents.toggle_highlight(record_id, user_id=user_id())
        else:
            doc = documents.set_flags(record_id, body.action, user_id=user_id())
        return jsonify(serialize_document(doc))

    @bp.get('/categories')
    @can_read
    def list_categories():
        archived = request.args.get('archived', 'false').lower() == 'true'
        return jsonify([serialize_category(c) for c in repo().list_categories(archived)])

    @bp.post('/categories')
    @can_write
    def create_category():
        body = parse_body(CategoryCreate)
        return jsonify(serialize_category(repo().create_category(body.title))), 201

    @bp.get('/<int:record_id>/versions')
    @can_read
    def list_versions(record_id):
        return jsonify([serialize_version(v) for v in repo().list_versions(record_id)])

    @bp.post('/<int:record_id>/versions')
    @can_write
    def add_version(record_id):
        body = parse_body(VersionCreate)
        row = repo().add_version(record_id, body.version, body.notes, body.file_key, user_id=user_id())
        return jsonify(serialize_version(row)), 201

    @bp.get('/<int:record_id>/reviews')
    @can_read
    def list_reviews(record_id):
        return jsonify([serialize_review(r) for r in repo().list_reviews(record_id)])

    @bp.post('/<int:record_id>/reviews')
    @can_write
    def add_review(record_id):
        body = parse_body(ReviewCreate)
        row = repo().add_review(
            record_id, body.details, body.review_date, body.next_review_date, user_id=user_id()
        )
        return jsonify(serialize_review(row)), 201

    return bp


downloads_bp = Blueprint('downloads', __name__)


@downloads_bp.get('/api/documents/download/<path:filename>')
@login_required
def download(filename):
    """Stream an uploaded file inline."""
    path = get_storage().resolve(filename)
    if path is None:
        raise NotFound('File not found')
    return send_file(
        path,
        mimetype=content_type_for(path.name),
        as_attachment=False,
        download_name=path.name,
    )
