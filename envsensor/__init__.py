"""Client for BLE environmental sensors.

Connects to a sensor exposing temperature, humidity and pressure
characteristics, enables notifications for each of them and publishes the
decoded readings on pypubsub topics under ``envsensor.``.
"""

from envsensor.util import DeferredExecution

__version__ = "0.3.0"

# Subscribers are called from this worker so that transport callbacks never
# block on user code.
publishingThread = DeferredExecution("publishing")
