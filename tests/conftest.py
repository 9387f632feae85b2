"""
Shared pytest setup: put the tutor package and the test fakes on the path.
"""

import os
import sys

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(project_root, "multi_ai_tutor", "src"))
sys.path.insert(0, os.path.dirname(__file__))
