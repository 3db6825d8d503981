import sys
import logging
import argparse
from marksync import create_app

log = logging.getLogger('werkzeug')
log.disabled = True
cli = sys.modules['flask.cli']
cli.show_server_banner = lambda *x: None

app = create_app()

def main() -> None:
    p = argparse.ArgumentParser(prog="marksync-server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8072)
    args = p.parse_args()

    print(f"Marksync starting on http://{args.host}:{args.port}", flush=True)
    # the change feed holds one request open per subscriber
    app.run(host=args.host, port=args.port, debug=False, threaded=True)

if __name__ == "__main__":
    main()
