"""
Test fixtures and helper utilities for standalone test scripts.
Provides common setup, teardown, and test data creation functions.
"""

import sys
import os
import tempfile
import itertools
from datetime import datetime, timedelta
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backoffice.models.database import Database, enable_sqlite_foreign_keys, init_db
from backoffice.models.schemas import StepTemplateCreate
from backoffice.core.event_bus import EventBus
from backoffice.core.template_service import TemplateService
from backoffice.core.workflow_engine import WorkflowEngine


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


async def run_tests(title, tests):
    """
    Run (name, coroutine function) pairs and print a summary.
    Returns a process exit code.
    """
    import traceback

    print_test_header(title)

    tests_passed = 0
    tests_failed = 0

    for test_name, test_func in tests:
        try:
            await test_func()
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


# ============================================================================
# Database setup/teardown
# ============================================================================

def _remove_database_files(db_path):
    for path in (db_path, f"{db_path}-shm", f"{db_path}-wal"):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                pass


async def create_test_database(db_path):
    """
    Create a fresh file-backed test database.
    Deletes any existing file and creates the schema.
    """
    _remove_database_files(db_path)

    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        future=True,
        connect_args={"timeout": 10.0, "check_same_thread": False},
    )
    enable_sqlite_foreign_keys(test_engine)

    test_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    await init_db(test_engine)

    return Database(async_engine=test_engine, session_factory=test_session_factory)


# ============================================================================
# Clock
# ============================================================================

class FrozenClock:
    """Deterministic clock for the engine; only moves when told to"""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def set(self, moment):
        self.now = moment

    def advance(self, days=0, hours=0):
        self.now = self.now + timedelta(days=days, hours=hours)


# ============================================================================
# Test data factories
# ============================================================================

def make_step(title, sort_order, days_from_start=None, days_from_previous=None, **kwargs):
    return StepTemplateCreate(
        title=title,
        sort_order=sort_order,
        days_from_start=days_from_start,
        days_from_previous=days_from_previous,
        **kwargs,
    )


def three_step_plan():
    """A: due at start, B: 3 days after A, C: 2 days after B"""
    return [
        make_step("A", 1, days_from_start=0),
        make_step("B", 2, days_from_previous=3),
        make_step("C", 3, days_from_previous=2),
    ]


_template_counter = itertools.count(1)


async def create_test_template(session, steps=None, business_id="biz-ad", name=None):
    """Create a template; defaults to three_step_plan()"""
    if steps is None:
        steps = three_step_plan()
    if name is None:
        name = f"Onboarding {next(_template_counter)}"

    return await TemplateService(session).create_template(name, business_id, steps)


async def start_test_workflow(
    engine: WorkflowEngine,
    template_id,
    start_date=None,
    customer_business_id="cb-1",
    assignee_id="user-1",
):
    """Start a workflow; start_date defaults to 2026-01-01"""
    return await engine.start_workflow(
        template_id,
        customer_business_id,
        start_date or datetime(2026, 1, 1),
        assignee_id,
    )


def step_by_title(workflow, title):
    for step in workflow.steps:
        if step.title == title:
            return step
    raise AssertionError(f"Workflow {workflow.id} has no step titled {title}")


# ============================================================================
# Event bus helpers
# ============================================================================

class EventCollector:
    """Helper class to collect events for testing"""

    def __init__(self):
        self.events = []

    async def handler(self, data: dict):
        self.events.append(data)

    def count(self):
        return len(self.events)

    def find_event(self, **kwargs):
        """Find event matching criteria"""
        for event in self.events:
            if all(event.get(key) == value for key, value in kwargs.items()):
                return event
        return None


# ============================================================================
# Test context managers
# ============================================================================

class TestContext:
    """Context manager for setting up test environment"""

    __test__ = False

    _context_counter = 0

    def __init__(self, db_path=None, clock=None):
        # Generate unique database path for each context
        if db_path is None:
            TestContext._context_counter += 1
            import time
            db_path = os.path.join(
                tempfile.gettempdir(),
                f"test_backoffice_{os.getpid()}_{TestContext._context_counter}_{int(time.time()*1000)}.db",
            )
        self.db_path = db_path
        self.db = None
        self.event_bus = None
        self.clock = clock or FrozenClock()

    async def __aenter__(self):
        """Setup test environment"""
        self.db = await create_test_database(self.db_path)
        self.event_bus = EventBus()
        await self.event_bus.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Cleanup test environment"""
        if self.event_bus:
            await self.event_bus.stop()

        if self.db:
            await self.db.close()

        _remove_database_files(self.db_path)

    @asynccontextmanager
    async def get_session(self):
        """Get a new database session as an async context manager"""
        session = self.db.session_factory()
        try:
            yield session
        finally:
            await session.close()

    @asynccontextmanager
    async def engine(self):
        """WorkflowEngine on a fresh session driven by this context's clock"""
        async with self.get_session() as session:
            yield WorkflowEngine(session, clock=self.clock)


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_raises(exception_type, func, *args, **kwargs):
    """Assert function raises specific exception"""
    try:
        func(*args, **kwargs)
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )


async def assert_raises_async(exception_type, coro):
    """Assert awaiting coro raises specific exception; returns the exception"""
    try:
        await coro
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )


def assert_single_active_step(workflow):
    """At most one step of a workflow is ACTIVE"""
    active = [step.title for step in workflow.steps if step.status == "ACTIVE"]
    if len(active) > 1:
        raise AssertionError(f"Workflow {workflow.id} has {len(active)} active steps: {active}")
