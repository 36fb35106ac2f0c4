from fastapi import FastAPI, Request, Depends, Response
from fastapi.middleware.cors import CORSMiddleware
from twilio.request_validator import RequestValidator
from app.core.config import get_settings, Settings
from app.core.logger import logger
from app.models.call import TurnContext
from app.services.call_dispatcher import CallDispatcher, TECHNICAL_DIFFICULTIES_MESSAGE
from app.services.flow_store import get_flow_store
from app.services.twilio_service import TwilioService

# Initialize FastAPI app
app = FastAPI(title="NumSphere Call Flow Service")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_dispatcher(settings: Settings = Depends(get_settings)) -> CallDispatcher:
    """Dispatcher bound to the configured flow store."""
    return CallDispatcher(get_flow_store(settings), settings)

def is_valid_twilio_request(request: Request, form, settings: Settings) -> bool:
    """Check X-Twilio-Signature when signature validation is switched on."""
    if not settings.VALIDATE_TWILIO_SIGNATURE:
        return True
    if not settings.TWILIO_AUTH_TOKEN:
        logger.error("Signature validation is on but TWILIO_AUTH_TOKEN is not set")
        return False

    # Behind a proxy the public URL is what Twilio signed
    url = str(request.url)
    if settings.PUBLIC_BASE_URL:
        url = settings.PUBLIC_BASE_URL.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"

    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
    return validator.validate(url, dict(form), request.headers.get("X-Twilio-Signature", ""))

async def dispatch_turn(request: Request, settings: Settings, dispatcher: CallDispatcher) -> Response:
    try:
        form = await request.form()
        if not is_valid_twilio_request(request, form, settings):
            logger.warning(f"Rejected request with invalid Twilio signature on {request.url.path}")
            return TwilioService.create_hangup_response(
                "This request could not be verified.", settings.DEFAULT_VOICE, status_code=403
            )
        context = TurnContext.from_request(form, request.query_params)
    except Exception as e:
        logger.error(f"Error reading webhook request on {request.url.path}: {str(e)}", exc_info=True)
        return TwilioService.create_hangup_response(TECHNICAL_DIFFICULTIES_MESSAGE, settings.DEFAULT_VOICE)

    twiml = await dispatcher.handle(context)
    return TwilioService.create_response(twiml)

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.info("Health check requested")
    return {"status": "healthy"}

@app.post("/")
async def root_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: CallDispatcher = Depends(get_dispatcher),
):
    """Root endpoint that handles calls like /handle-call."""
    logger.info("Received request at root endpoint, handling as /handle-call")
    return await handle_call(request, settings, dispatcher)

@app.post("/handle-call")
async def handle_call(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: CallDispatcher = Depends(get_dispatcher),
):
    """Handle a new inbound call by compiling the number's active call flow."""
    return await dispatch_turn(request, settings, dispatcher)

@app.post("/handle-gather")
async def handle_gather(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: CallDispatcher = Depends(get_dispatcher),
):
    """Handle the caller's key press (or silence) for a suspended gather block."""
    return await dispatch_turn(request, settings, dispatcher)

@app.post("/handle-multi-forward")
async def handle_multi_forward(request: Request, settings: Settings = Depends(get_settings)):
    """Ring a group of numbers given in the request, then fall back to voicemail."""
    try:
        form = await request.form()
        if not is_valid_twilio_request(request, form, settings):
            return TwilioService.create_hangup_response(
                "This request could not be verified.", settings.DEFAULT_VOICE, status_code=403
            )

        forward_numbers = form.get("ForwardNumbers") or ""
        strategy = form.get("Strategy") or "simultaneous"
        try:
            ring_timeout = int(form.get("RingTimeout") or 20)
        except ValueError:
            ring_timeout = 20

        logger.info(
            f"Multi-forward requested with strategy {strategy}",
            extra={"call_sid": form.get("CallSid") or ""},
        )

        if not forward_numbers:
            logger.error("Configuration error: no forward numbers provided")
            return TwilioService.create_hangup_response("Configuration error. Please contact support.", settings.DEFAULT_VOICE)

        numbers = TwilioService.clean_numbers(forward_numbers.split(","))
        if not numbers:
            logger.error("Configuration error: no valid forward numbers")
            return TwilioService.create_hangup_response("No valid forwarding numbers configured.", settings.DEFAULT_VOICE)

        twiml = TwilioService.create_multi_forward_twiml(numbers, strategy, ring_timeout, settings.DEFAULT_VOICE)
        return TwilioService.create_response(twiml)
    except Exception as e:
        logger.error(f"Error handling multi-forward: {str(e)}", exc_info=True)
        return TwilioService.create_hangup_response(TECHNICAL_DIFFICULTIES_MESSAGE, settings.DEFAULT_VOICE)

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    logger.info(f"Application starting up with {settings.FLOW_STORE_BACKEND} flow store")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutting down")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
