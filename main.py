import os
import sys

from ledger_server import app, get_controller


def warm_ledger():
    """Run the startup reconciliation fetch before the first page load."""
    if os.getenv('FLASK_DEBUG', '0') == '1' and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return None
    with app.app_context():
        state = get_controller().state
    app.logger.info('Ledger ready: next S.no %s, %d entries (%s)',
                    state.next_sequence_number, len(state.entries),
                    'synced' if state.synced else 'local')
    return state


if __name__ == '__main__':
    if len(sys.argv) > 1 and sys.argv[1] == 'cli':
        import ledger_service
        sys.exit(ledger_service.main(sys.argv[2:]))
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    warm_ledger()
    app.run(host=host, port=port, debug=debug)
