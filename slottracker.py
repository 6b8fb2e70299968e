import asyncio
import importlib
import signal
import sys
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from tabulate import tabulate

from loggers.logger_setup import setup_application_logging, log_performance, log_context
from tracker_system.config import TrackerConfig
from tracker_system.errors import TrackerError
from tracker_system.host import HostServer
from tracker_system.tracker import SlotTracker

config = TrackerConfig.from_env()

logger = setup_application_logging(
    app_name="slottracker",
    log_level=10 if config.debug_mode else 20,
    log_dir=config.log_dir,
    enable_performance_logging=True,
    max_file_size=20 * 1024 * 1024,  # 20 MB
    backup_count=10
)

tracker: Optional[SlotTracker] = None

startup_metrics: Dict[str, float] = {}


@asynccontextmanager
async def startup_phase(phase_name: str):
    """Context manager to track startup phase timing."""
    start_time = time.perf_counter()
    logger.info(f"🔄 Starting phase: {phase_name}")

    try:
        yield
        duration = time.perf_counter() - start_time
        startup_metrics[phase_name] = duration
        logger.info(f"✅ Completed phase: {phase_name} in {duration:.4f}s")
    except Exception as e:
        duration = time.perf_counter() - start_time
        logger.error(f"❌ Failed phase: {phase_name} after {duration:.4f}s - {str(e)}")
        raise


def log_startup_summary():
    """Log the effective configuration and how long each startup phase took."""
    settings_table = tabulate(
        list(config.describe().items()), headers=["Setting", "Value"], tablefmt="fancy_grid"
    )
    logger.info(f"⚙️ Slot tracker configuration:\n{settings_table}")

    total_time = sum(startup_metrics.values())
    performance_data = [
        [phase, f"{duration:.4f}", f"{(duration / total_time * 100):.1f}%" if total_time > 0 else "0%"]
        for phase, duration in startup_metrics.items()
    ]
    performance_data.append(["TOTAL", f"{total_time:.4f}", "100%"])
    performance_table = tabulate(
        performance_data, headers=["Phase", "Duration (s)", "Percentage"], tablefmt="fancy_grid"
    )
    logger.info(f"📈 Startup Performance Summary:\n{performance_table}")


def load_host(path: Optional[str]) -> HostServer:
    """
    Build the host adapter named by "package.module:factory".

    The factory is called with no arguments and must return an object
    satisfying HostServer.
    """
    if not path or ":" not in path:
        raise TrackerError("SLOT_TRACKER_HOST must be set to 'module:factory'")

    module_name, attr = path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    host = factory()
    if not isinstance(host, HostServer):
        raise TrackerError(f"{path} did not return a HostServer")
    return host


@log_performance("graceful_shutdown")
async def shutdown_handler():
    logger.info("🛑 Initiating graceful shutdown...")
    try:
        if tracker:
            await tracker.stop()
            logger.info("✅ Slot tracker stopped")
    except Exception as e:
        logger.error(f"❌ Error stopping slot tracker: {e}", exc_info=True)
    logger.info("🏁 Graceful shutdown completed")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event):
    """Install SIGINT/SIGTERM handlers to trigger a graceful shutdown."""

    def _signal_handler(sig_name: str):
        logger.info(f"📡 Received {sig_name} signal, initiating shutdown...")
        shutdown_event.set()

    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, _signal_handler, sig_name)
            logger.debug(f"📡 Signal handler registered for {sig_name}")
        except NotImplementedError:
            # Windows doesn't support signal handlers in event loops
            logger.debug(f"⚠️ Signal handlers not supported on this platform for {sig_name}")
        except Exception as e:
            logger.warning(f"⚠️ Failed to register signal handler for {sig_name}: {e}")


@log_performance("async_main_execution")
async def _async_main(shutdown_event: asyncio.Event):
    global tracker
    loop = asyncio.get_running_loop()
    _install_signal_handlers(loop, shutdown_event)

    with log_context(logger, "Slot tracker startup", level=20):
        async with startup_phase("Host Adapter"):
            host = load_host(config.host)

        async with startup_phase("Database Initialization"):
            tracker = SlotTracker(host, config)
            if not await tracker.initialize():
                logger.warning("⚠️ Store unavailable; tracking in memory only")

        async with startup_phase("Background Tasks"):
            tracker.start()
            tracker.ensure_context_active("startup")

        log_startup_summary()

    logger.info("🎉 Slot tracker is running")
    try:
        await shutdown_event.wait()
        logger.info("🛑 Shutdown signal received, stopping services...")
    finally:
        await shutdown_handler()


@log_performance("application_main")
def main():
    logger.info("🚀 Starting Slot Tracker...")
    logger.info(f"🐍 Python version: {sys.version}")

    shutdown_event = asyncio.Event()
    try:
        asyncio.run(_async_main(shutdown_event))
    except KeyboardInterrupt:
        logger.info("⌨️ Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error(f"💥 Fatal error occurred: {e}", exc_info=True)
        raise
    finally:
        logger.info("👋 Application shutdown complete")


if __name__ == "__main__":
    main()
