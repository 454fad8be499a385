"""
Caseflow — Stage Catalog Tests

Canonicalization of current and legacy labels, ordering, and
Forward/Remand classification.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from lifecycle.catalog import StageCatalog
from lifecycle.config import DEFAULT_CONFIG_PATH, load_lifecycle_config
from lifecycle.errors import InvalidTransitionError, UnknownStageError
from lifecycle.types import TransitionType

CATALOG = load_lifecycle_config(DEFAULT_CONFIG_PATH, include_env_vars=False).catalog


class TestCanonicalize(unittest.TestCase):

    def test_canonical_names(self):
        for stage in CATALOG.stages:
            self.assertEqual(CATALOG.canonicalize(stage), stage)

    def test_case_and_whitespace_insensitive(self):
        self.assertEqual(CATALOG.canonicalize("  high   court "), "High Court")
        self.assertEqual(CATALOG.canonicalize("SUPREME COURT"), "Supreme Court")

    def test_snake_and_kebab_case(self):
        self.assertEqual(CATALOG.canonicalize("first_appeal"), "First Appeal")
        self.assertEqual(CATALOG.canonicalize("high-court"), "High Court")

    def test_legacy_aliases(self):
        expected = {
            "Scrutiny": "Assessment",
            "Demand": "Assessment",
            "ASMT-10": "Assessment",
            "asmt 10": "Assessment",
            "Appeals": "First Appeal",
            "Appellate Authority": "First Appeal",
            "GSTAT": "Tribunal",
            "HC": "High Court",
            "sc": "Supreme Court",
        }
        for label, stage in expected.items():
            self.assertEqual(CATALOG.canonicalize(label), stage, label)

    def test_unknown_label_fails(self):
        with self.assertRaises(UnknownStageError):
            CATALOG.canonicalize("Arbitration")

    def test_empty_label_fails(self):
        for label in ("", "   ", None):
            with self.assertRaises(UnknownStageError):
                CATALOG.canonicalize(label)

    def test_unknown_is_terminal(self):
        with self.assertRaises(UnknownStageError) as ctx:
            CATALOG.canonicalize("Nowhere")
        self.assertTrue(ctx.exception.terminal)
        self.assertFalse(ctx.exception.retryable)


class TestOrdering(unittest.TestCase):

    def test_order(self):
        self.assertEqual(CATALOG.order("Assessment"), 0)
        self.assertEqual(CATALOG.order("Supreme Court"), 5)

    def test_next_forward(self):
        self.assertEqual(CATALOG.next_forward("Assessment"), "Adjudication")
        self.assertEqual(CATALOG.next_forward("High Court"), "Supreme Court")
        self.assertIsNone(CATALOG.next_forward("Supreme Court"))

    def test_initial_stage(self):
        self.assertEqual(CATALOG.initial_stage, "Assessment")

    def test_available_targets(self):
        self.assertEqual(
            CATALOG.available_targets("Tribunal", TransitionType.FORWARD),
            ["High Court", "Supreme Court"],
        )
        self.assertEqual(
            CATALOG.available_targets("Tribunal", TransitionType.REMAND),
            ["First Appeal", "Adjudication", "Assessment"],
        )
        self.assertEqual(CATALOG.available_targets("Assessment", TransitionType.REMAND), [])


class TestClassify(unittest.TestCase):

    def test_forward(self):
        self.assertEqual(CATALOG.classify("Assessment", "Adjudication"), TransitionType.FORWARD)
        self.assertEqual(CATALOG.classify("Assessment", "High Court"), TransitionType.FORWARD)

    def test_remand(self):
        self.assertEqual(CATALOG.classify("Tribunal", "Adjudication"), TransitionType.REMAND)

    def test_same_stage_invalid(self):
        with self.assertRaises(InvalidTransitionError):
            CATALOG.classify("Tribunal", "Tribunal")


class TestConstruction(unittest.TestCase):

    def test_default_catalog(self):
        self.assertEqual(StageCatalog().initial_stage, "Assessment")

    def test_alias_to_unknown_stage_rejected(self):
        with self.assertRaises(ValueError):
            StageCatalog(stages=("A", "B"), aliases={"X": "C"})

    def test_duplicate_stages_rejected(self):
        with self.assertRaises(ValueError):
            StageCatalog(stages=("A", "A"))

    def test_immutable(self):
        with self.assertRaises(Exception):
            CATALOG.stages = ("A",)


if __name__ == "__main__":
    unittest.main()
