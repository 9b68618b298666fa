from .consumer import Consumer
from .handlers import HandlerRegistry, JobHandler, JobHandlerError, build_registry
from .scheduler import JobProducer, Scheduler, TriggerSpec, default_triggers

__all__ = [
    "Consumer",
    "HandlerRegistry",
    "JobHandler",
    "JobHandlerError",
    "build_registry",
    "JobProducer",
    "Scheduler",
    "TriggerSpec",
    "default_triggers",
]
