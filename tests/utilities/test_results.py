#!/usr/bin/env python3
"""
Unit Tests for Correlation Result Files
======================================

Test Coverage:
- Summaries of merged calculators and omitted empty lags
- Codon-indexed curves
- JSON, TSV and gzipped bootstrap output
- Output file naming

Usage:
    python -m pytest tests/utilities/test_results.py
"""

import json
import logging
import math
import shutil
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

from subcorr.analysis.substitutions import accumulate
from subcorr.profiling.position_profile import PositionType
from subcorr.statistics.accumulators import Calculators
from subcorr.utilities.results import (
    CovResult,
    Curve,
    read_bootstrap,
    result_prefix,
    write_bootstrap,
)

logging.getLogger().setLevel(logging.WARNING)


def filled_calculators(maxl=9):
    calc = Calculators.new(maxl)
    subs = np.array([0, 0, 0, 0, 0, 0, 0, 0, 1], dtype=float)
    accumulate(subs, calc.total, calc.ks)
    return calc


class TestCovResult(unittest.TestCase):
    """Test summaries of merged calculators."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        if Path(self.temp_dir).exists():
            shutil.rmtree(self.temp_dir)

    def test_summary(self):
        result = CovResult.from_calculators(filled_calculators())
        self.assertAlmostEqual(result.ks, 1 / 9)
        self.assertAlmostEqual(result.var_ks, 1 / 9)
        self.assertEqual(result.n, 9)
        self.assertEqual(result.ct.indices, list(range(9)))
        self.assertEqual(result.ct.counts, [9, 8, 7, 6, 5, 4, 3, 2, 1])
        self.assertEqual(result.ct.values[8], 0.0)
        self.assertEqual(len(result.mean_xy), 9)
        self.assertEqual(result.cs, Curve())
        self.assertEqual(result.step, 1)

    def test_empty_lags_are_omitted(self):
        calc = Calculators.new(5)
        calc.total.increment(3, 1.0, 1.0)
        result = CovResult.from_calculators(calc)
        self.assertEqual(result.ct.indices, [3])
        self.assertTrue(math.isnan(result.ks))

    def test_codon_lags(self):
        calc = filled_calculators()
        result = CovResult.from_calculators(calc, position=PositionType.THIRD, codon_lags=True)
        self.assertEqual(result.step, 3)
        self.assertEqual(result.ct.indices, [0, 1, 2])
        self.assertEqual(result.ct.counts, [9, 6, 3])

        plain = CovResult.from_calculators(
            calc, position=PositionType.NON_CODING, codon_lags=True
        )
        self.assertEqual(plain.step, 1)

    def test_json_has_no_nan(self):
        calc = Calculators.new(3)
        calc.ks.increment(1.0)
        path = Path(self.temp_dir) / "result.json"
        CovResult.from_calculators(calc).to_json(path)
        data = json.loads(path.read_text())
        self.assertIsNone(data["var_ks"])
        self.assertEqual(data["n"], 1)
        self.assertEqual(data["ct"], {"indices": [], "values": [], "counts": []})

    def test_tsv(self):
        path = Path(self.temp_dir) / "result.tsv"
        CovResult.from_calculators(filled_calculators()).to_tsv(path)
        header = path.read_text().splitlines()[0]
        self.assertTrue(header.startswith("#Ks=0.111"))
        self.assertIn(";N=9", header)
        table = pd.read_csv(path, sep="\t", comment="#")
        self.assertEqual(list(table.columns), ["lag", "ct", "n", "mean_xy"])
        self.assertEqual(len(table), 9)

    def test_bootstrap_file(self):
        path = Path(self.temp_dir) / "boot.jsonl.gz"
        undefined = Calculators.new(9)
        undefined.ks.increment(0.0)
        results = [
            CovResult.from_calculators(filled_calculators()),
            CovResult.from_calculators(undefined),
            CovResult.from_calculators(filled_calculators()),
        ]
        self.assertEqual(write_bootstrap(path, results), 2)
        lines = read_bootstrap(path)
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0]["n"], 9)


def test_result_prefix_skips_empty_parts(tmp_path):
    stem = result_prefix(tmp_path, "subcorr", "NC_000913.3", "reads-vs-genome", "", "pos4")
    assert stem == tmp_path / "subcorr_NC_000913.3_reads-vs-genome_pos4"
