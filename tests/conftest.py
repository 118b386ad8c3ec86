"""Pytest configuration and fixtures for pdf-service tests."""

from pathlib import Path

import pytest

from pdf_service.browser_manager import BrowserConfig, BrowserManager
from tests.fake_engine import FakeClock, FakeEngine


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options to pytest."""
    parser.addoption(
        "--save-test-outputs",
        action="store_true",
        default=False,
        help="Save test output files (PDFs) to disk for manual inspection",
    )


@pytest.fixture
def save_test_outputs(request: pytest.FixtureRequest) -> bool:
    """Fixture to check if test outputs should be saved to disk."""
    return request.config.getoption("--save-test-outputs")


@pytest.fixture(autouse=True)
def no_metrics_server(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the app lifespan from binding the dedicated metrics port during tests."""
    monkeypatch.setenv("METRICS_SERVER_ENABLED", "false")


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def browser_config() -> BrowserConfig:
    return BrowserConfig(
        idle_timeout=300,
        page_load_timeout=30,
        device_scale_factor=2.0,
        shutdown_grace_period=1,
        warmup_on_startup=False,
    )


@pytest.fixture
def browser_manager(browser_config: BrowserConfig, fake_engine: FakeEngine, fake_clock: FakeClock) -> BrowserManager:
    return BrowserManager(config=browser_config, engine=fake_engine, clock=fake_clock)  # type: ignore[arg-type]


@pytest.fixture(scope="session")
def chromium_installed() -> bool:
    """Whether Playwright's Chromium build is present on this machine."""
    try:
        from playwright.sync_api import sync_playwright

        with sync_playwright() as playwright:
            return Path(playwright.chromium.executable_path).exists()
    except Exception:  # noqa: BLE001
        return False


@pytest.fixture
def require_chromium(chromium_installed: bool) -> None:
    if not chromium_installed:
        pytest.skip("Playwright Chromium is not installed")
