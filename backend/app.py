"""
Flask REST API for the bulk bundle allocator web app.
"""
import io
from datetime import datetime
from flask import Flask, request, jsonify, send_file
from flask_cors import CORS
import logging

from config import (
    DATABASE_PATH, CAPACITY_GB, EXPORT_FILE_PREFIX, USE_SUMMARY_FORMULAS,
    SECRET_KEY, DEBUG, CORS_ORIGINS, MAX_CONTENT_LENGTH
)
from database import Database, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSED
from api.upload_handler import read_uploaded_files
from api.order_service import OrderService, OrderRejected, OrderNotFound
from api.history_report import (
    build_history_workbook, history_record_to_dict, history_report_filename, list_available_dates
)
from upload_template import XLSX_MIMETYPE

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = SECRET_KEY
app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
CORS(app, origins=CORS_ORIGINS)

# Initialize database and service
db = Database(str(DATABASE_PATH))
order_service = OrderService(
    db,
    capacity_gb=CAPACITY_GB,
    file_prefix=EXPORT_FILE_PREFIX,
    use_formulas=USE_SUMMARY_FORMULAS,
)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _send_export(export_file, extra_headers: dict = None):
    response = send_file(
        io.BytesIO(export_file.content),
        mimetype=export_file.mimetype,
        as_attachment=True,
        download_name=export_file.name
    )
    for name, value in (extra_headers or {}).items():
        response.headers[name] = value
    return response


def _order_to_dict(order: dict) -> dict:
    result = {
        "id": order["id"],
        "createdAt": order["created_at"],
        "status": order["status"],
        "source": order["source"],
        "entryCount": order["entry_count"],
        "validCount": order["valid_count"],
        "invalidCount": order["invalid_count"],
        "duplicateCount": order["duplicate_count"],
        "fixedCount": order["fixed_count"],
        "totalGB": float(order["total_gb"]),
        "processedAt": order["processed_at"],
    }
    if "entries" in order:
        result["entries"] = [
            {
                "rawNumber": entry["raw_number"],
                "number": entry["number"],
                "allocationGB": float(entry["allocation_gb"]),
                "isValid": entry["is_valid"],
                "wasFixed": entry["was_fixed"],
                "isDuplicate": entry["is_duplicate"],
            }
            for entry in order["entries"]
        ]
    return result


def _download_response(download):
    result = download.result
    if not result.ok:
        status = 400 if not result.stats.kept else 500
        return jsonify({"success": False, "error": result.error}), status

    headers = {"X-Total-Data": result.stats.to_dict()["totalDisplay"]}
    if download.already_processed_ids:
        headers["X-Orders-Already-Processed"] = ",".join(download.already_processed_ids)
    return _send_export(result.download, headers)


@app.route('/api/entries/validate', methods=['POST'])
def validate_entries():
    """Validate pasted phone number / allocation lines"""
    try:
        data = _json_body()
        result = order_service.validate_text(data.get("text", ""), data.get("identityMode"))
        return jsonify({"success": True, **result}), 200
    except ValueError as e:
        logger.error(f"Validate error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Validate error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/entries/upload', methods=['POST'])
def upload_entries():
    """Validate uploaded .xlsx, .csv or .txt phone lists"""
    try:
        pairs, skipped, original_names = read_uploaded_files(request)
        result = order_service.validate_pairs(pairs, skipped, request.form.get("identityMode"))
        return jsonify({"success": True, "files": original_names, **result}), 200
    except ValueError as e:
        logger.error(f"Upload error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Upload error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/entries/categorize', methods=['POST'])
def categorize_entries():
    """Count pasted entries per allocation size"""
    try:
        data = _json_body()
        result = order_service.categorize_text(data.get("text", ""))
        return jsonify({"success": True, **result}), 200
    except ValueError as e:
        logger.error(f"Categorize error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Categorize error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/export', methods=['POST'])
def export_entries():
    """Download the upload template, or a zip of split templates"""
    try:
        data = _json_body()
        identity_mode = data.get("identityMode")
        processed = order_service.entries_from_payload(data.get("entries", []), identity_mode)
        entries = processed.entries
        result = order_service.export_entries(entries, identity_mode, skipped=processed.stats.skipped,
                                              removed_duplicates=processed.stats.removed_duplicates)
    except ValueError as e:
        logger.error(f"Export error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Export error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500

    if not result.ok:
        status = 400 if not entries else 500
        return jsonify({"success": False, "error": result.error, "stats": result.stats.to_dict()}), status

    return _send_export(result.download, {
        "X-Total-Data": result.stats.to_dict()["totalDisplay"],
        "X-Skipped": str(result.stats.skipped),
    })


@app.route('/api/orders', methods=['POST'])
def create_order():
    """Queue validated entries as an order"""
    try:
        data = _json_body()
        processed = order_service.entries_from_payload(data.get("entries", []), data.get("identityMode"))
        order_id = order_service.create_order(processed.entries, data.get("source", "web"), processed.stats.skipped)
        return jsonify({"success": True, "orderId": order_id}), 201
    except (OrderRejected, ValueError) as e:
        logger.error(f"Create order rejected: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Create order error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/orders', methods=['GET'])
def list_orders():
    """List queued orders"""
    try:
        status = request.args.get('status')
        if status and status not in (ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSED):
            return jsonify({"success": False, "error": f"Unknown status: {status}"}), 400
        limit = request.args.get('limit', 50, type=int)
        orders = db.list_orders(status, limit)
        return jsonify({
            "success": True,
            "orders": [_order_to_dict(order) for order in orders]
        }), 200
    except Exception as e:
        logger.error(f"List orders error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/orders/<order_id>', methods=['GET'])
def get_order(order_id: str):
    """Get an order with its entries"""
    try:
        order = order_service.get_order(order_id)
        return jsonify({"success": True, "order": _order_to_dict(order)}), 200
    except OrderNotFound as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except Exception as e:
        logger.error(f"Get order error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/orders/<order_id>/download', methods=['GET'])
def download_order(order_id: str):
    """Download one order's template(s) and mark it processed"""
    try:
        download = order_service.download_order(order_id)
    except OrderNotFound as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except Exception as e:
        logger.error(f"Download order error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500
    return _download_response(download)


@app.route('/api/orders/download', methods=['POST'])
def download_orders():
    """Merge several orders into one download and mark them processed"""
    try:
        data = _json_body()
        order_ids = data.get("orderIds", [])
        if not isinstance(order_ids, list):
            raise ValueError("orderIds must be a list")
        download = order_service.download_orders(order_ids)
    except OrderNotFound as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except ValueError as e:
        logger.error(f"Download orders error: {e}")
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        logger.error(f"Download orders error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500
    return _download_response(download)


@app.route('/api/orders/<order_id>', methods=['DELETE'])
def delete_order(order_id: str):
    """Delete an order and its entries"""
    try:
        deleted = db.delete_order(order_id)
        if deleted:
            return jsonify({"success": True}), 200
        return jsonify({"success": False, "error": "Order not found"}), 404
    except Exception as e:
        logger.error(f"Delete order error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/history', methods=['GET'])
def list_history():
    """List validation/export sessions"""
    try:
        date = request.args.get('date')
        limit = request.args.get('limit', 100, type=int)
        records = db.list_history(date, limit)
        return jsonify({
            "success": True,
            "dates": list_available_dates(records),
            "history": [history_record_to_dict(record) for record in records]
        }), 200
    except Exception as e:
        logger.error(f"List history error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/history/export', methods=['GET'])
def export_history():
    """Download the history report workbook"""
    try:
        records = db.list_history(request.args.get('date'), request.args.get('limit', 1000, type=int))
        if not records:
            return jsonify({"success": False, "error": "No history data to export"}), 404

        return send_file(
            io.BytesIO(build_history_workbook(records)),
            mimetype=XLSX_MIMETYPE,
            as_attachment=True,
            download_name=history_report_filename(datetime.now())
        )
    except Exception as e:
        logger.error(f"Export history error: {e}", exc_info=True)
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/history', methods=['DELETE'])
def clear_history():
    """Clear all history"""
    try:
        removed = db.clear_history()
        return jsonify({"success": True, "removed": removed}), 200
    except Exception as e:
        logger.error(f"Clear history error: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    database = db.check_database_health()
    status = "healthy" if database["accessible"] else "degraded"
    return jsonify({"status": status, "database": database}), 200


if __name__ == '__main__':
    # Bind to 0.0.0.0 to allow access from Docker containers
    app.run(debug=DEBUG, host='0.0.0.0', port=5000)
