#!/usr/bin/env python

import os, re, sys, unittest

DIRNAME = 'tests.d'

DIR = os.path.realpath(os.path.join(os.path.dirname(__file__), DIRNAME))
if not os.path.isdir(DIR):
    raise Exception("Test dir doesn't exist: %s/" % DIR)

# common.py sits beside this runner.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

def collect():
    suite = unittest.TestSuite()
    loader = unittest.defaultTestLoader
    for dirname, subdirs, files in os.walk(DIR):
        sys.path.append(dirname)
        for f in sorted(files):
            m = re.search(r'^(test_[a-z_]+)\.py$', f, re.IGNORECASE)
            if not m:
                continue # Skip, not a test module
            mod = __import__(m.group(1))
            for name in dir(mod):
                obj = getattr(mod, name)
                if isinstance(obj, type) and issubclass(obj, unittest.TestCase) and name.endswith('Tests'):
                    suite.addTests(loader.loadTestsFromTestCase(obj))
    return suite

if __name__ == '__main__':
    result = unittest.TextTestRunner(verbosity = 2).run(collect())
    exit(0 if result.wasSuccessful() else 1)
