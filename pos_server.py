"""
HTTP API for the till front end.

Every write answers immediately from optimistic local state; remote
confirmation happens in the background through the pending queue.
"""
import logging

from flask import Flask, jsonify, request

from pos_errors import NotFoundError, ValidationError


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')
    return data


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def create_app(services, log_level: str = "INFO") -> Flask:
    app = Flask(__name__)
    app.logger.setLevel(getattr(logging, log_level, logging.INFO))
    store = services.store
    engine = services.engine

    @app.errorhandler(ValidationError)
    def _validation_error(exc):
        app.logger.info("Rejected %s %s: %s", request.method, request.path, exc)
        return jsonify({'status': 'error', 'message': str(exc)}), 400

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return jsonify({'status': 'error', 'message': str(exc)}), 404

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        return response

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'online': services.connectivity.is_online()})

    # ---------- products ----------
    @app.route('/api/products')
    def api_products():
        return jsonify({'status': 'success', 'products': store.snapshot()['products']})

    @app.route('/api/products', methods=['POST'])
    def api_create_product():
        product = store.create_product(_json_body())
        return jsonify({'status': 'success', 'product': product}), 201

    @app.route('/api/products/<product_id>', methods=['PUT', 'PATCH'])
    def api_update_product(product_id: str):
        product = store.update_product(product_id, _json_body())
        return jsonify({'status': 'success', 'product': product})

    @app.route('/api/products/<product_id>', methods=['DELETE'])
    def api_delete_product(product_id: str):
        store.delete_product(product_id)
        return jsonify({'status': 'success'})

    @app.route('/api/lookup-barcode')
    def api_lookup_barcode():
        barcode = (request.args.get('barcode') or '').strip()
        if not barcode:
            raise ValidationError('barcode is required')
        product = store.product_by_barcode(barcode)
        if not product:
            raise NotFoundError(f'No product with barcode {barcode}')
        return jsonify({'status': 'success', 'product': product})

    # ---------- stock movements ----------
    @app.route('/api/movements')
    def api_movements():
        limit = _int_arg('limit', 50)
        return jsonify({'status': 'success', 'movements': store.recent_movements(limit)})

    @app.route('/api/movements', methods=['POST'])
    def api_record_movement():
        data = _json_body()
        movement = store.record_stock_movement(
            data.get('product_id'),
            data.get('type'),
            data.get('quantity'),
            note=data.get('note'),
            payment_method=data.get('payment_method'),
        )
        return jsonify({'status': 'success', 'movement': movement}), 201

    # ---------- cart ----------
    def _cart_payload():
        return {'status': 'success', 'cart': store.snapshot()['cart'], 'total': store.cart_total()}

    @app.route('/api/cart')
    def api_cart():
        return jsonify(_cart_payload())

    @app.route('/api/cart', methods=['POST'])
    def api_cart_add():
        data = _json_body()
        store.add_to_cart(data.get('product_id'), data.get('quantity', 1))
        return jsonify(_cart_payload())

    @app.route('/api/cart/<product_id>', methods=['PUT'])
    def api_cart_update(product_id: str):
        store.update_cart_quantity(product_id, _json_body().get('quantity'))
        return jsonify(_cart_payload())

    @app.route('/api/cart/<product_id>', methods=['DELETE'])
    def api_cart_remove(product_id: str):
        store.remove_from_cart(product_id)
        return jsonify(_cart_payload())

    @app.route('/api/cart', methods=['DELETE'])
    def api_cart_clear():
        store.clear_cart()
        return jsonify(_cart_payload())

    # ---------- sales ----------
    @app.route('/api/sales')
    def api_sales():
        return jsonify({'status': 'success', 'sales': store.snapshot()['sales']})

    @app.route('/api/create-sale', methods=['POST'])
    def api_create_sale():
        data = _json_body()
        sale = store.record_sale(
            data.get('payment_method') or 'cash',
            discount=data.get('discount', 0) or 0,
            amount_given=data.get('amount_given'),
        )
        return jsonify({'status': 'success', 'sale': sale, 'pending_ops': services.queue.length()})

    # ---------- settings ----------
    @app.route('/api/settings')
    def api_settings():
        return jsonify({'status': 'success', 'settings': store.snapshot()['settings']})

    @app.route('/api/settings', methods=['PUT'])
    def api_update_settings():
        settings = store.update_settings(_json_body())
        return jsonify({'status': 'success', 'settings': settings})

    # ---------- reports ----------
    @app.route('/api/reports/summary')
    def api_reports_summary():
        return jsonify({
            'status': 'success',
            'today_sales': store.today_sales_total(),
            'inventory_value': store.total_inventory_value(),
            'low_stock': store.low_stock_products(),
            'monthly_sales': store.monthly_sales(_int_arg('months', 6)),
            'recent_movements': store.recent_movements(_int_arg('limit', 10)),
        })

    # ---------- sync ----------
    @app.route('/api/sync/status')
    def api_sync_status():
        return jsonify({'status': 'success', 'sync': engine.status(),
                        'online': services.connectivity.is_online()})

    @app.route('/api/sync/run', methods=['POST'])
    def api_sync_run():
        """Manual drain. Response: { status, result } with result null when a pass is already running."""
        services.connectivity.check()
        result = engine.drain()
        if result is None:
            app.logger.info("Manual sync skipped: a pass is already running")
        else:
            app.logger.info("Manual sync finished: %s", result.stopped_reason)
        return jsonify({'status': 'success', 'result': result.to_dict() if result else None,
                        'sync': engine.status()})

    @app.route('/api/sync/pending')
    def api_sync_pending():
        ops = [op.to_dict() for op in services.queue.operations()]
        return jsonify({'status': 'success', 'operations': ops})

    @app.route('/api/sync/evicted')
    def api_sync_evicted():
        return jsonify({'status': 'success', 'evicted': engine.evicted()})

    @app.route('/api/sync/evicted', methods=['DELETE'])
    def api_sync_evicted_clear():
        engine.clear_evicted()
        return jsonify({'status': 'success'})

    return app
