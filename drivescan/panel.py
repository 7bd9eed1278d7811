import threading
import time
import queue
import logging
from gpiozero import LED, Button

log = logging.getLogger('panel')

LED_MODES = ('off', 'on', 'blink', 'once')

class PanelThread(threading.Thread):
    """
    The front panel: one LED and one button. The LED is told what to do via setLed() and gpiozero
    runs the blinking in the background, so this thread only wakes up when the mode changes.

    A short press of the button toggles collection, holding it for longPress seconds or more asks
    for an upload. Either way the press is just reported to the runner as a PanelEvent.
    """

    def __init__(self, q, ledPin=18, buttonPin=4, longPress=3.0):
        threading.Thread.__init__(self, name='panel', daemon=True)
        self.q = q
        self.ledPin = ledPin
        self.buttonPin = buttonPin
        self.longPress = longPress
        self.live = True
        self.modes = queue.Queue()
        self.led = None
        self.downTime = None

    def run(self):
        self.led = LED(self.ledPin)
        # Button expected to be active low (e.g. connected to GND)
        button = Button(self.buttonPin)
        button.when_pressed = self.handlePress
        button.when_released = self.handleRelease
        log.debug("Panel thread startup complete")

        while self.live:
            try:
                mode = self.modes.get(timeout=1)
            except queue.Empty:
                continue
            self.applyLed(mode)

        self.led.close()
        button.close()

    def applyLed(self, mode):
        if mode == 'on':
            self.led.on()
        elif mode == 'off':
            self.led.off()
        elif mode == 'blink':
            self.led.blink(on_time=0.5, off_time=0.5)
        elif mode == 'once':
            self.led.blink(on_time=0.3, off_time=0, n=1)
        else:
            log.warning(f"Unknown LED mode {mode}")

    def setLed(self, mode):
        self.modes.put(mode)

    def stop(self):
        self.live = False

    def handlePress(self):
        self.downTime = time.monotonic()

    def handleRelease(self):
        if self.downTime is None:
            return
        held = time.monotonic() - self.downTime
        self.downTime = None
        action = 'upload' if held >= self.longPress else 'toggle'
        self.q.put(['PanelEvent', {'type': 'CtlButton', 'time': held, 'action': action}])
