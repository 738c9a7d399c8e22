import os
import argparse
import logging
import uvicorn

from utils import request_id_ctx

logger = logging.getLogger(__name__)


def _on_off(flag: bool) -> str:
    return "ENABLED" if flag else "DISABLED"


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="OpenAI to NVIDIA NIM proxy")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", default=None, help="Path to config.yaml (default: $NIM_PROXY_CONFIG or ./config.yaml)")
    parser.add_argument("--host", default="0.0.0.0", help="Listen address")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")), help="Listen port")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] [req:%(request_id)s] %(name)s: %(message)s"
    )

    # Override global LogRecord factory to inject request_id
    _old_factory = logging.getLogRecordFactory()

    def _record_factory(*args, **kwargs):
        record = _old_factory(*args, **kwargs)
        # Default to "-" if contextvar is unset (safe for startup/background)
        record.request_id = request_id_ctx.get("-")
        return record

    logging.setLogRecordFactory(_record_factory)

    if args.debug:
        logger.debug("Debug logging enabled")

    if args.config:
        os.environ["NIM_PROXY_CONFIG"] = args.config

    # Imported late so the app sees the chosen config path
    from app import app
    from config import load_config

    cfg = load_config()
    logger.info("OpenAI -> NVIDIA NIM proxy running on port %d", args.port)
    logger.info("Health:        http://localhost:%d/health", args.port)
    logger.info("Reasoning:     %s (set SHOW_REASONING=false to disable)", _on_off(cfg.show_reasoning))
    logger.info("Thinking mode: %s (set ENABLE_THINKING_MODE=false to disable)", _on_off(cfg.enable_thinking_mode))
    if cfg.api_key:
        logger.info("NIM API key:   SET")
    else:
        logger.warning("NIM API key:   NOT SET, set NIM_API_KEY env var!")

    uvicorn.run(app, host=args.host, port=args.port, reload=False)
