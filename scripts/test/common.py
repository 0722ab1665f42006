#!/usr/bin/env python

import importlib.util, io, logging, os, unittest
from time import sleep, time

TOOLS_DIR = os.path.realpath(os.path.dirname(__file__) + '/../..')

LABEL_TEST_LOGGER = 'unittests'

LOG_SCOPES = [
    (None, 'all'),
    (logging.DEBUG, 'debug'),
    (logging.INFO, 'info'),
    (logging.WARNING, 'warning'),
    (logging.ERROR, 'error'),
    (logging.CRITICAL, 'critical')
]

def load(name, path):
    # Scripts are not installed as packages, so load them by path.
    spec = importlib.util.spec_from_file_location(name, path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod

def load_script(name, relative_path):
    return load(name, os.path.join(TOOLS_DIR, relative_path))

def wait_for(condition, timeout = 2.0, interval = 0.01):
    '''
    Poll until condition() is truthy. Needed wherever a worker thread does the job.
    '''
    deadline = time() + timeout
    while time() < deadline:
        if condition():
            return True
        sleep(interval)
    return bool(condition())

class LevelFilter(logging.Filter):
    def __init__(self, level):
        logging.Filter.__init__(self)
        self.level = level

    def filter(self, record):
        return self.level is None or self.level == record.levelno

class LoggableTestCase(type):
    '''
    Metaclass that captures everything sent to the LABEL_TEST_LOGGER logger, split up by level.

    Declare like so:
        class ExampleTests(common.TestCase, metaclass=common.LoggableTestCase)
    and point the module under test at the test logger:
        mod._logger = common.logging.getLogger(common.LABEL_TEST_LOGGER)
    '''
    def __new__(cls, name, bases, dct):

        original_setup = dct.get('setUp', lambda self: None)
        original_teardown = dct.get('tearDown', lambda self: None)

        def setUp(self):
            self.logger = logging.getLogger(LABEL_TEST_LOGGER)
            self.logger.setLevel(logging.DEBUG)
            self.logStreams = {}
            self.logHandlers = {}
            for level, label in LOG_SCOPES:
                stream = io.StringIO()
                handler = logging.StreamHandler(stream)
                handler.addFilter(LevelFilter(level))
                self.logger.addHandler(handler)
                self.logStreams[label] = stream
                self.logHandlers[label] = handler
            original_setup(self)

        def tearDown(self):
            try:
                original_teardown(self)
            finally:
                for handler in self.logHandlers.values():
                    self.logger.removeHandler(handler)

        def getLogs(self, scope = 'all'):
            return [line.strip() for line in self.logStreams[scope].getvalue().splitlines()]

        dct['setUp'] = setUp
        dct['tearDown'] = tearDown
        dct['getLogs'] = getLogs
        return type.__new__(cls, name, bases, dct)

class TestCase(unittest.TestCase):

    def assertContains(self, value, enumerable):
        self.assertIn(value, enumerable)

    def assertDoesNotContain(self, value, enumerable):
        self.assertNotIn(value, enumerable)

    def assertEmpty(self, obj):
        self.assertEqual(0, len(obj))

    def assertNone(self, value):
        self.assertIsNone(value)

    def assertSingle(self, obj, condition = None):
        matches = list(obj) if condition is None else [i for i in obj if condition(i)]
        self.assertEqual(1, len(matches), matches)
        return matches[0]

    def assertStartsWith(self, expected, val):
        self.assertTrue(val.startswith(expected), '%r does not start with %r' % (val, expected))
