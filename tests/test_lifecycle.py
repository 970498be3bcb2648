"""
Publication lifecycle tests against an in-memory control provider.
"""
import threading
from unittest.mock import patch

import pytest
import requests

from core.exceptions import (
    ArchiveOpenError, AuthenticationError, ConfigurationError, ControlConnectError,
    ListenerCreationError, PublicationCancelled, SetupTimeoutError, TransportLostError,
    TransportSetupError,
)
from core.lifecycle import Publication, PublicationResult, State, TransportLifecycleController
from server.gateway import GatewayServer
from tests.fake_transport import FakeControlProvider

WAIT = 10


class FatalRecorder:
    def __init__(self):
        self.errors = []
        self.called = threading.Event()

    def __call__(self, error):
        self.errors.append(error)
        self.called.set()


@pytest.fixture
def on_fatal():
    return FatalRecorder()


@pytest.fixture
def publish(provider, on_fatal):
    """Start publications and make sure they are all stopped afterwards."""
    running = []

    def _publish(config, provider=provider, **kwargs):
        controller = TransportLifecycleController(config, provider=provider,
                                                  on_fatal=on_fatal, **kwargs)
        publication = controller.start()
        running.append(publication)
        return controller, publication

    yield _publish

    for publication in running:
        publication.cancel()
        assert publication.stopped.wait(WAIT)


def local_url(provider, path):
    listener = provider.connections[-1].listeners[-1]
    return f"http://127.0.0.1:{listener.local_port}{path}"


class TestPublication:

    def test_resolves_once(self):
        publication = Publication()
        assert publication.resolve(PublicationResult(url="http://a.onion/"))
        assert not publication.resolve(PublicationResult(url="http://b.onion/"))
        assert publication.wait_result(0).url == "http://a.onion/"

    def test_cancel_runs_callbacks_once(self):
        publication = Publication()
        calls = []
        publication.on_cancel(lambda: calls.append(1))
        publication.cancel()
        publication.cancel()
        assert calls == [1]
        assert publication.cancelled

    def test_cancel_resolves_pending_result(self):
        publication = Publication()
        publication.cancel()
        assert isinstance(publication.wait_result(0).error, PublicationCancelled)
        assert not publication.resolve(PublicationResult(url="http://a.onion/"))


class TestDirectoryEndToEnd:
    """Directory D with index.html, slug enabled."""

    def test_publish_and_serve(self, site_dir, provider, publish, make_config):
        controller, publication = publish(make_config(site_dir, slug=True))
        result = publication.wait_result(WAIT)

        assert result.ok
        slug = controller.slug
        assert len(slug) == 16
        host = provider.connections[0].listeners[0].host
        assert result.url == f"http://{host}/{slug}/"
        assert controller.state is State.SERVING

        response = requests.get(local_url(provider, f"/{slug}/index.html"), timeout=WAIT)
        assert response.status_code == 200
        assert response.text == "<html>Hello</html>"

        with pytest.raises(requests.exceptions.ConnectionError):
            requests.get(local_url(provider, "/index.html"), timeout=WAIT)

        response = requests.get(local_url(provider, "/"), allow_redirects=False, timeout=WAIT)
        assert response.status_code == 302
        assert response.headers["Location"].endswith(f"/{slug}/")

    def test_listener_config_for_ephemeral_identity(self, site_dir, provider, publish, make_config):
        _, publication = publish(make_config(site_dir))
        assert publication.wait_result(WAIT).ok

        config, = provider.listener_configs
        assert config.use_supplied_key is False
        assert config.await_propagation is True
        assert config.retain_key is False
        assert config.port == 80

    def test_authenticates_with_credential(self, site_dir, publish, make_config):
        provider = FakeControlProvider(password="s3cret")
        _, publication = publish(make_config(site_dir, control_password="s3cret"), provider=provider)
        assert publication.wait_result(WAIT).ok
        assert provider.connections[0].authenticated


class TestSingleFileEndToEnd:

    def test_report_pdf(self, report_file, provider, publish, make_config):
        _, publication = publish(make_config(report_file, slug=False))
        result = publication.wait_result(WAIT)

        assert result.ok
        host = provider.connections[0].listeners[0].host
        assert result.url == f"http://{host}/report.pdf"

        response = requests.get(local_url(provider, "/report.pdf"), timeout=WAIT)
        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 report"

        response = requests.get(local_url(provider, "/other.pdf"), timeout=WAIT)
        assert response.status_code == 404

    def test_slug_and_filename(self, report_file, provider, publish, make_config):
        controller, publication = publish(make_config(report_file, slug=True))
        result = publication.wait_result(WAIT)
        assert result.url.endswith(f"/{controller.slug}/report.pdf")


class TestPassphraseIdentity:

    def test_same_passphrase_same_host(self, site_dir, publish, make_config):
        results = []
        for _ in range(2):
            provider = FakeControlProvider()
            controller, publication = publish(make_config(site_dir, passphrase="open sesame"),
                                              provider=provider)
            results.append((publication.wait_result(WAIT), controller.identity))
            publication.cancel()
            assert publication.stopped.wait(WAIT)

        (first, first_identity), (second, second_identity) = results
        assert first.ok and second.ok
        host = first.url.split('/')[2]
        assert host == second.url.split('/')[2]
        assert first_identity.service_host() == second_identity.service_host()

    def test_listener_config_for_derived_identity(self, site_dir, provider, publish, make_config):
        controller, publication = publish(make_config(site_dir, passphrase="open sesame"))
        assert publication.wait_result(WAIT).ok

        config, = provider.listener_configs
        assert config.use_supplied_key is True
        assert config.key_type == 'ED25519-V3'
        assert config.key_content == controller.identity.key_content()
        assert config.retain_key is True
        assert config.await_propagation is True


class TestSetupErrors:

    def test_corrupt_archive_never_contacts_transport(self, tmp_path, provider, publish, make_config):
        bogus = tmp_path / "broken.zip"
        bogus.write_bytes(b"PK\x03\x04 garbage")
        _, publication = publish(make_config(bogus, archive=True))

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ArchiveOpenError)
        assert isinstance(result.error, ConfigurationError)
        assert provider.connect_calls == []
        assert publication.stopped.wait(WAIT)

    def test_missing_path(self, tmp_path, provider, publish, make_config):
        _, publication = publish(make_config(tmp_path / "absent"))
        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ConfigurationError)
        assert provider.connect_calls == []

    def test_connect_failure(self, site_dir, publish, make_config):
        provider = FakeControlProvider(fail_connect=True)
        controller, publication = publish(make_config(site_dir), provider=provider)

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ControlConnectError)
        assert isinstance(result.error.cause, ConnectionRefusedError)
        assert controller.state is State.FAILED

    def test_authentication_failure(self, site_dir, publish, make_config):
        provider = FakeControlProvider(password="right")
        _, publication = publish(make_config(site_dir, control_password="wrong"), provider=provider)

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, AuthenticationError)
        assert provider.connections[0].closed
        assert provider.listener_configs == []

    def test_listener_failure(self, site_dir, publish, make_config):
        provider = FakeControlProvider(fail_listener=True)
        _, publication = publish(make_config(site_dir), provider=provider)

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ListenerCreationError)
        assert "ADD_ONION refused" in str(result.error)
        assert provider.connections[0].closed

    def test_connect_timeout(self, site_dir, publish, make_config):
        provider = FakeControlProvider(block_connect=True)
        _, publication = publish(make_config(site_dir), provider=provider, setup_timeout=0.3)

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, SetupTimeoutError)

        # The late connection is closed rather than leaked
        provider.unblock.set()
        for _ in range(50):
            if provider.connections and provider.connections[0].closed:
                break
            threading.Event().wait(0.05)
        assert provider.connections[0].closed

    def test_null_byte_in_path(self, site_dir, provider, publish, make_config):
        _, publication = publish(make_config(site_dir / "bad\x00name"))
        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ConfigurationError)
        assert publication.stopped.wait(WAIT)
        assert provider.connect_calls == []

    def test_unusable_listener_socket(self, site_dir, publish, make_config):
        provider = FakeControlProvider(broken_listener=True)
        controller, publication = publish(make_config(site_dir), provider=provider)

        result = publication.wait_result(WAIT)
        assert isinstance(result.error, ListenerCreationError)
        assert isinstance(result.error.cause, OSError)
        assert publication.stopped.wait(WAIT)
        assert controller.state is State.FAILED
        connection = provider.connections[0]
        assert connection.listeners[0].closed
        assert connection.closed

    def test_unexpected_error_still_resolves(self, site_dir, provider, publish, make_config):
        with patch("core.lifecycle.create_app", side_effect=RuntimeError("boom")):
            _, publication = publish(make_config(site_dir))
            result = publication.wait_result(WAIT)
            assert publication.stopped.wait(WAIT)

        assert isinstance(result.error, TransportSetupError)
        assert isinstance(result.error.cause, RuntimeError)
        assert provider.connect_calls == []

    def test_cancel_during_setup(self, site_dir, publish, make_config):
        provider = FakeControlProvider(block_connect=True)
        _, publication = publish(make_config(site_dir), provider=provider)

        publication.cancel()
        result = publication.wait_result(WAIT)
        assert isinstance(result.error, PublicationCancelled)
        provider.unblock.set()

    def test_cancel_after_setup_is_not_reported_as_success(self, site_dir, provider, publish,
                                                           on_fatal, make_config):
        setup = TransportLifecycleController._publish

        def setup_then_cancel(self, publication):
            url = setup(self, publication)
            publication.cancel()
            return url

        with patch.object(TransportLifecycleController, "_publish", setup_then_cancel):
            controller, publication = publish(make_config(site_dir))
            result = publication.wait_result(WAIT)
            assert publication.stopped.wait(WAIT)

        assert isinstance(result.error, PublicationCancelled)
        assert on_fatal.errors == []
        assert controller.state is State.TERMINATED
        connection = provider.connections[0]
        assert connection.listeners[0].closed
        assert connection.closed


class TestRuntimeFatal:

    def test_transport_loss_is_fatal(self, site_dir, provider, publish, on_fatal, make_config):
        controller, publication = publish(make_config(site_dir))
        assert publication.wait_result(WAIT).ok
        connection = provider.connections[0]
        listener = connection.listeners[0]

        connection.drop()

        assert on_fatal.called.wait(WAIT)
        error, = on_fatal.errors
        assert isinstance(error, TransportLostError)
        assert publication.fatal_error is error
        assert publication.stopped.wait(WAIT)
        assert listener.closed
        assert connection.closed

    def test_serve_error_is_fatal(self, site_dir, provider, publish, on_fatal, make_config):
        with patch.object(GatewayServer, 'serve_forever', side_effect=OSError("listener closed")):
            _, publication = publish(make_config(site_dir))
            assert publication.wait_result(WAIT).ok
            assert on_fatal.called.wait(WAIT)

        error, = on_fatal.errors
        assert isinstance(error, TransportLostError)
        assert "Cannot serve HTTP" in str(error)
        assert provider.connections[0].listeners[0].closed

    def test_cancel_while_serving_is_not_fatal(self, site_dir, provider, publish, on_fatal,
                                               make_config):
        controller, publication = publish(make_config(site_dir))
        assert publication.wait_result(WAIT).ok

        publication.cancel()

        assert publication.stopped.wait(WAIT)
        assert on_fatal.errors == []
        assert publication.fatal_error is None
        assert controller.state is State.TERMINATED
        assert provider.connections[0].closed

    def test_only_one_result(self, site_dir, provider, publish, on_fatal, make_config):
        _, publication = publish(make_config(site_dir))
        first = publication.wait_result(WAIT)
        provider.connections[0].drop()
        assert on_fatal.called.wait(WAIT)
        assert publication.wait_result(0) is first


def test_archive_end_to_end(site_zip, provider, publish, make_config):
    _, publication = publish(make_config(site_zip, archive=True, slug=False))
    result = publication.wait_result(WAIT)
    assert result.ok
    assert result.url.endswith(".onion/")

    response = requests.get(local_url(provider, "/docs/deep/b.txt"), timeout=WAIT)
    assert response.text == "beta"
