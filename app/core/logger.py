import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
import json
from datetime import datetime

# Create logs directory if it doesn't exist
logs_dir = Path("logs")
logs_dir.mkdir(exist_ok=True)

class CallFlowFormatter(logging.Formatter):
    """Formatter that focuses on call turns and flow decisions"""

    def format(self, record):
        # Skip debug messages
        if record.levelno < logging.INFO:
            return ""

        message = record.getMessage()
        call_sid = getattr(record, 'call_sid', 'Unknown')

        if "Incoming call" in message:
            return f"\n📞 INCOMING CALL: {call_sid} ({getattr(record, 'called_number', 'Unknown')})"
        elif "Gather input" in message:
            return f"🔢 CALLER INPUT [{call_sid}]: {getattr(record, 'digits', '') or '(none)'} for block {getattr(record, 'block_id', '?')}"
        elif "Gather outcome" in message:
            return f"🔁 GATHER: {message.split('Gather outcome:')[1].strip()}" if ":" in message else message
        elif "Compiled response" in message:
            return f"✅ Response ready for call {call_sid}"
        elif "Cycle detected" in message:
            return f"🔄 CYCLE: {message}"
        elif "Configuration error" in message or "not configured" in message or "No active call flow" in message:
            return f"⚠️ CONFIG: {message}"
        elif "error" in message.lower():
            return f"❗ ERROR: {message}"
        elif "Store request" in message:
            return f"🌐 STORE: {message.split('Store request')[1].strip()}" if ":" in message else message
        else:
            return message

class JsonFormatter(logging.Formatter):
    """Formatter that outputs logs in JSON format for file logging"""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }

        for key in ("call_sid", "flow_id", "block_id", "called_number", "digits"):
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)

def setup_logger(name: str = "numsphere_call_flows") -> logging.Logger:
    """Set up and configure logger"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    # Console handler with call-focused formatter
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(CallFlowFormatter())
    logger.addHandler(console_handler)

    # File handler with detailed JSON formatter
    file_handler = RotatingFileHandler(
        logs_dir / "app.log",
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(JsonFormatter())
    logger.addHandler(file_handler)

    return logger

# Create default logger instance
logger = setup_logger()
