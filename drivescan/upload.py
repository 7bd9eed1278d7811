import threading
import logging

import requests

from drivescan.errors import UploadException

log = logging.getLogger('upload')

UPLOAD_PATH = '/drive-data/app'
SIGNUP_PATH = '/auth/signup'
ALREADY_REGISTERED = "Username already registered"

def endpoint(baseUrl, path):
    if not baseUrl:
        raise UploadException("No collection server configured")
    return baseUrl.rstrip('/') + path

class UploadThread(threading.Thread):
    """
    This thread can be started to submit the collected samples to the collection server. It can
    run while collection is going on: it only reads from the store and moves the upload watermark,
    and the samples themselves are never touched, so the collector keeps appending undisturbed.

    Samples go up oldest first in batches. Each batch is a JSON array POSTed to
    {base}/drive-data/app, and it counts as delivered on any 2xx. Only then does the watermark
    move past it, so a failed batch is simply sent again on the next upload. Cellular uplinks
    being what they are, each batch gets a few attempts before we give up for this round.

    Positional arguments:
    q -- queue object for communication with master thread, may be None
    baseUrl -- collection server base URL
    store -- SampleStore to upload from

    Keyword arguments:
    batchSize -- samples per request
    attempts -- tries per batch before giving up
    timeout -- seconds per request
    session -- requests.Session to use
    """

    def __init__(self, q, baseUrl, store, batchSize=500, attempts=5, timeout=20.0, session=None):
        threading.Thread.__init__(self, name='upload', daemon=True)
        self.q = q
        self.baseUrl = baseUrl
        self.store = store
        self.batchSize = batchSize
        self.attempts = attempts
        self.timeout = timeout
        self.session = session or requests.Session()
        self.uploaded = 0

    def run(self):
        log.info("Starting upload")
        ok = True
        try:
            self.uploadPending()
        except Exception:
            log.exception("Upload failed")
            ok = False
        if self.q is not None:
            self.q.put(["UploadComplete", {'uploaded': self.uploaded, 'ok': ok}])

    def uploadPending(self):
        while True:
            batch = self.store.queryPending(self.batchSize)
            if not batch:
                break
            self.sendBatch(batch)
            self.store.markUploaded(batch[-1].id)
            self.uploaded += len(batch)
            log.debug(f"Uploaded through sample {batch[-1].id}")
        log.info(f"Upload finished, {self.uploaded} samples sent")
        return self.uploaded

    def sendBatch(self, samples):
        url = endpoint(self.baseUrl, UPLOAD_PATH)
        body = [s.toWire() for s in samples]

        for attempt in range(1, self.attempts + 1):
            log.debug(f"Sending {len(body)} samples, attempt {attempt}")
            try:
                response = self.session.post(url, json=body, timeout=self.timeout)
                if 200 <= response.status_code < 300:
                    return
                log.warning(f"Received bad response from server: {response.status_code}")
            except requests.RequestException:
                log.exception("Sending data failed.")
        raise UploadException(f"Gave up on uploading data after {self.attempts} attempts.")

def signup(baseUrl, username, password, deviceId, timeout=20.0, session=None):
    """
    Register this device's account with the collection server. Registering an account that
    already exists counts as success, so this is safe to run on every install.
    """
    session = session or requests.Session()
    url = endpoint(baseUrl, SIGNUP_PATH)
    try:
        response = session.post(url, json={'username': username, 'password': password, 'device_id': deviceId},
                                timeout=timeout)
    except requests.RequestException:
        log.exception("Signup request failed")
        return False

    if response.status_code in (200, 201):
        log.info(f"Registered {username} for device {deviceId}")
        return True
    if response.status_code == 400:
        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get('detail') if isinstance(body, dict) else None
        if detail == ALREADY_REGISTERED:
            log.info(f"{username} is already registered")
            return True
    log.error(f"Signup failed: {response.status_code} - {response.text}")
    return False
