from flask import Blueprint, render_template, request, jsonify, session, current_app, send_file
import logging
import os
import uuid
import json

from app.errors import ComparisonError
from app.exporter import (
    build_comparison_workbook, build_missing_users_csv, comparison_filename, MISSING_USERS_FILENAME
)
from app.models import ComparisonRow, SummaryStatistics, UploadedFile
from app.utils import inspect_csv_headers, load_and_compare_uploads, load_and_find_missing_users, paginate_rows


main = Blueprint('main', __name__)
logger = logging.getLogger(__name__)


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in current_app.config['ALLOWED_EXTENSIONS']


def invalid_csv_response(csv_upload):
    """400 response when the CSV slot holds something other than a CSV file, else None."""
    if csv_upload is None:
        return None
    if not allowed_file(csv_upload.name) or not csv_upload.name.lower().endswith('.csv'):
        return jsonify({
            'error': 'Invalid file type',
            'details': f'The CSV upload must be a .csv file.\n\nYour file: {csv_upload.name}'
        }), 400
    return None


def to_uploaded_file(storage):
    """Read a werkzeug FileStorage fully into memory."""
    return UploadedFile(
        name=storage.filename,
        content=storage.read(),
        content_type=storage.mimetype or 'application/octet-stream'
    )


def get_csv_upload():
    storage = request.files.get('csv_file')
    if storage is None or storage.filename == '':
        return None
    return to_uploaded_file(storage)


def get_json_uploads():
    return [
        to_uploaded_file(storage)
        for storage in request.files.getlist('json_files')
        if storage.filename
    ]


def store_result(result, session_key):
    """Write a result to the upload folder and remember its path in the session."""
    previous = session.get(session_key)
    if previous and os.path.exists(previous):
        os.remove(previous)

    upload_folder = current_app.config['UPLOAD_FOLDER']
    result_file_path = os.path.join(upload_folder, f"{uuid.uuid4()}_{session_key}.json")
    with open(result_file_path, 'w', encoding='utf-8') as f:
        json.dump(result, f, ensure_ascii=False)
    session[session_key] = result_file_path
    return result_file_path


def discard_results():
    """Delete the result files referenced by the current session."""
    for session_key in ('result_file', 'missing_users_file'):
        result_file = session.get(session_key)
        if result_file and os.path.exists(result_file):
            os.remove(result_file)


def error_response(result):
    """400 for input problems, 500 when the run hit an unexpected exception."""
    status = 500 if 'traceback' in result else 400
    if status == 500:
        logger.error("Unexpected comparison failure:\n%s", result['traceback'])
    return jsonify({
        'error': result['error'],
        'details': result.get('details', '')
    }), status


def load_result(session_key):
    result_file = session.get(session_key)
    if not result_file or not os.path.exists(result_file):
        return None
    with open(result_file, 'r', encoding='utf-8') as f:
        return json.load(f)


@main.route('/')
def index():
    discard_results()
    session.clear()
    return render_template('index.html',
                           identity_key=current_app.config['IDENTITY_KEY'],
                           page_sizes=current_app.config['PAGE_SIZE_OPTIONS'])


@main.route('/csv-headers', methods=['POST'])
def csv_headers():
    """Suggest the identity column for the user comparison form."""
    csv_upload = get_csv_upload()
    if csv_upload is None:
        return jsonify({'error': 'No CSV file selected', 'details': 'Please select a CSV file.'}), 400

    try:
        info = inspect_csv_headers(csv_upload, current_app.config['EMAIL_COLUMN_CANDIDATES'])
    except ComparisonError as e:
        return jsonify(e.to_dict()), 400
    return jsonify(info)


@main.route('/compare', methods=['POST'])
def compare():
    try:
        csv_upload = get_csv_upload()
        invalid = invalid_csv_response(csv_upload)
        if invalid:
            return invalid
        json_uploads = get_json_uploads()
        logger.info("Comparing %s against %d JSON/ZIP upload(s)",
                    csv_upload.name if csv_upload else None, len(json_uploads))

        config = current_app.config
        result = load_and_compare_uploads(
            csv_upload,
            json_uploads,
            identity_candidates=config['EMAIL_COLUMN_CANDIDATES'],
            created_by_candidates=config['CREATED_BY_COLUMN_CANDIDATES'],
            identity_key=config['IDENTITY_KEY'],
            markers=config['CATEGORY_MARKERS'],
            inclusion_marker=config['INCLUSION_MARKER']
        )

        if 'error' in result:
            return error_response(result)

        store_result(result, 'result_file')
        session['csv_file_name'] = csv_upload.name

        return jsonify({
            'success': True,
            'redirect': '/results',
            'stats': result['stats'],
            'processing_time': result['processing_time']
        })

    except Exception as e:
        logger.exception("Exception in compare")
        return jsonify({
            'error': 'Processing error',
            'details': f'An unexpected error occurred:\n\n{str(e)}\n\nPlease check your file format and try again.'
        }), 500


@main.route('/results')
def results():
    result = load_result('result_file')
    if result is None:
        return render_template('index.html',
                               identity_key=current_app.config['IDENTITY_KEY'],
                               page_sizes=current_app.config['PAGE_SIZE_OPTIONS'],
                               error='No comparison data found. Please upload files and compare.')

    return render_template('results.html',
                           result=result,
                           csv_file_name=session.get('csv_file_name', 'CSV'),
                           page_sizes=current_app.config['PAGE_SIZE_OPTIONS'])


@main.route('/api/comparison-data')
def get_comparison_data():
    result = load_result('result_file')
    if result is None:
        return jsonify({'error': 'No comparison data'}), 404

    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    if per_page not in current_app.config['PAGE_SIZE_OPTIONS']:
        per_page = current_app.config['DEFAULT_PAGE_SIZE']
    page = request.args.get('page', 1, type=int)

    return jsonify({
        'summary': result['summary'],
        'stats': result['stats'],
        'processing_time': result['processing_time'],
        'pagination': paginate_rows(result['details'], page, per_page)
    })


@main.route('/download/excel')
def download_excel():
    result = load_result('result_file')
    if result is None:
        return jsonify({'error': 'No comparison data'}), 404

    rows = [ComparisonRow(**row) for row in result['details']]
    summary = SummaryStatistics(**result['summary'])
    return send_file(
        build_comparison_workbook(rows, summary),
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        as_attachment=True,
        download_name=comparison_filename()
    )


@main.route('/user-comparison', methods=['POST'])
def user_comparison():
    try:
        csv_upload = get_csv_upload()
        invalid = invalid_csv_response(csv_upload)
        if invalid:
            return invalid

        result = load_and_find_missing_users(
            csv_upload,
            get_json_uploads(),
            csv_column=request.form.get('csv_column', ''),
            json_key=request.form.get('json_key', current_app.config['IDENTITY_KEY'])
        )

        if 'error' in result:
            return error_response(result)

        store_result(result, 'missing_users_file')
        return jsonify(dict(result, success=True))

    except Exception as e:
        logger.exception("Exception in user comparison")
        return jsonify({
            'error': 'Processing error',
            'details': f'An unexpected error occurred:\n\n{str(e)}\n\nPlease check your file format and try again.'
        }), 500


@main.route('/download/missing-users')
def download_missing_users():
    result = load_result('missing_users_file')
    if result is None:
        return jsonify({'error': 'No user comparison data'}), 404

    return send_file(
        build_missing_users_csv(result['grouped']),
        mimetype='text/csv',
        as_attachment=True,
        download_name=MISSING_USERS_FILENAME
    )
