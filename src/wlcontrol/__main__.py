"""Main entry point for wlcontrol.

Runs the WiFi/Bluetooth backend headless and logs what a UI would show.
"""

import argparse
import logging
import signal
import sys
from dataclasses import replace

from PySide6.QtCore import QCoreApplication, QTimer

from wlcontrol import __version__
from wlcontrol.core.config import ConfigManager
from wlcontrol.core.controller import Controller
from wlcontrol.core.state import StateStore
from wlcontrol.core.worker import BackendWorker
from wlcontrol.models.bluetooth import BtDevice, PairingKind, PairingPrompt
from wlcontrol.models.wifi import WifiNetwork

logger = logging.getLogger(__name__)

# Gives the interpreter a chance to run signal handlers while Qt waits
_SIGNAL_POLL_MS = 200


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wlcontrol",
        description="wlcontrol - WiFi (iwd) and Bluetooth (BlueZ) control backend",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--no-bluetooth", action="store_true", help="do not start the Bluetooth side")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _wire_logging(store: StateStore) -> None:
    """Log state changes and prompts."""

    def on_networks(networks: list[WifiNetwork]) -> None:
        logger.info("WiFi networks: %d", len(networks))
        for network in networks:
            logger.debug("  %s [%s] %s", network.name, network.security_label, network.state.value)

    def on_devices(devices: list[BtDevice]) -> None:
        logger.info("Bluetooth devices: %d", len(devices))
        for device in devices:
            logger.debug("  %s (%s) %s", device.display_name, device.address, device.state.value)

    def on_pairing(prompt: PairingPrompt) -> None:
        code = f" code {prompt.code}" if prompt.code else ""
        logger.info("Pairing prompt from %s: %s%s", prompt.address, prompt.kind.value, code)

    store.wifi_available_changed.connect(lambda ok: logger.info("WiFi available: %s", ok))
    store.bt_available_changed.connect(lambda ok: logger.info("Bluetooth available: %s", ok))
    store.wifi_powered_changed.connect(lambda on: logger.info("WiFi powered: %s", on))
    store.bt_powered_changed.connect(lambda on: logger.info("Bluetooth powered: %s", on))
    store.wifi_scanning_changed.connect(lambda on: logger.info("WiFi scanning: %s", on))
    store.bt_discovering_changed.connect(lambda on: logger.info("Bluetooth discovering: %s", on))
    store.networks_changed.connect(on_networks)
    store.devices_changed.connect(on_devices)
    store.passphrase_requested.connect(lambda path, name: logger.info("Passphrase requested for %s", name))
    store.pairing_requested.connect(on_pairing)
    store.captive_portal_detected.connect(lambda url: logger.warning("Captive portal: %s", url))
    store.wifi_error.connect(lambda msg: logger.error("WiFi: %s", msg))
    store.bt_error.connect(lambda msg: logger.error("Bluetooth: %s", msg))


def main() -> int:
    """Run wlcontrol headless.

    Returns:
        Exit code (0 for success).
    """
    args = _parse_args(sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    QCoreApplication.setApplicationName("wlcontrol")
    QCoreApplication.setOrganizationName("wlcontrol")
    app = QCoreApplication(sys.argv[:1])

    config = ConfigManager()
    settings = config.backend_settings()
    if args.no_bluetooth:
        settings = replace(settings, bluetooth_enabled=False)

    store = StateStore()
    worker = BackendWorker(settings)
    controller = Controller(worker, store)
    _wire_logging(store)

    worker.event_received.connect(store.apply_event)
    worker.error_occurred.connect(lambda e: logger.error("Backend failed: %s", e))
    worker.finished.connect(app.quit)

    # A headless run has nobody to answer prompts
    store.passphrase_requested.connect(lambda path, name: controller.cancel_passphrase())

    def reject_pairing(prompt: PairingPrompt) -> None:
        if prompt.kind is PairingKind.REQUEST_PIN:
            controller.answer_pin("")
        elif prompt.kind is PairingKind.REQUEST_PASSKEY:
            controller.answer_passkey(None)
        elif prompt.kind.needs_reply:
            controller.answer_pairing(False)

    store.pairing_requested.connect(reject_pairing)

    def on_wifi_devices(devices: list) -> None:
        if store.active_device:
            config.set_last_adapter(store.active_device)

    store.wifi_devices_changed.connect(on_wifi_devices)

    def request_quit(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        app.quit()

    signal.signal(signal.SIGINT, request_quit)
    signal.signal(signal.SIGTERM, request_quit)
    timer = QTimer()
    timer.timeout.connect(lambda: None)
    timer.start(_SIGNAL_POLL_MS)

    worker.start()
    exit_code = app.exec()

    # Cleanup
    timer.stop()
    worker.stop()
    worker.wait()
    config.sync()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
