#!/usr/bin/env python3
"""Synthetic import workbook generator for throughput experiments.

Produces a Customers / Orders workbook matching ``config/pipeline.yml``:
- Row 1: header row
- Row 2+: data rows
- A configurable share of rows is made invalid (missing required value, bad
  format, unknown tier, repeated business key) so validation has work to do
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

TIERS = np.array(["GOLD", "SILVER", "BRONZE"])
MAX_CUSTOMERS = 9999  # Customer Code は C0001..C9999


def generate_customers(rows: int, error_rate: float, rng: np.random.Generator) -> pd.DataFrame:
    ids = np.arange(1, rows + 1)
    df = pd.DataFrame(
        {
            "Customer Code": [f"C{i:04d}" for i in ids],
            "Name": [f"Customer {i}" for i in ids],
            "Email": [f"customer{i}@example.com" for i in ids],
            "Tier": rng.choice(TIERS, rows),
        }
    )
    bad = rng.random(rows) < error_rate
    kinds = rng.integers(0, 4, rows)
    df.loc[bad & (kinds == 0), "Name"] = None
    df.loc[bad & (kinds == 1), "Email"] = "not-an-email"
    df.loc[bad & (kinds == 2), "Tier"] = "PLATINUM"
    dup = np.flatnonzero(bad & (kinds == 3))
    if len(dup):
        df.loc[dup, "Customer Code"] = df.loc[np.maximum(dup - 1, 0), "Customer Code"].to_numpy()
    return df


def generate_orders(rows: int, customers: int, error_rate: float, rng: np.random.Generator) -> pd.DataFrame:
    days = rng.integers(0, 365, rows)
    df = pd.DataFrame(
        {
            "Order No": [f"O{i:08d}" for i in range(1, rows + 1)],
            "Customer Code": [f"C{i:04d}" for i in rng.integers(1, customers + 1, rows)],
            "Order Date": (pd.Timestamp("2024-01-01") + pd.to_timedelta(days, unit="D")).date,
            "Amount": np.round(rng.uniform(1.0, 9999.99, rows), 2),
        }
    )
    bad = rng.random(rows) < error_rate
    kinds = rng.integers(0, 3, rows)
    df.loc[bad & (kinds == 0), "Customer Code"] = "C0000"  # 参照先なし
    df["Amount"] = df["Amount"].astype(object)
    df.loc[bad & (kinds == 1), "Amount"] = "n/a"
    df.loc[bad & (kinds == 2), "Order No"] = None
    return df


def create_workbook(output_path: Path, orders: int, customers: int, error_rate: float, seed: int = 42) -> None:
    rng = np.random.default_rng(seed)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        generate_customers(customers, error_rate, rng).to_excel(writer, sheet_name="Customers", index=False)
        generate_orders(orders, customers, error_rate, rng).to_excel(writer, sheet_name="Orders", index=False)
    print(f"Created workbook: {output_path}")
    print(f"  Customers rows: {customers}")
    print(f"  Orders rows: {orders}")
    print(f"  Invalid share: {error_rate:.1%}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic Customers/Orders workbook for pipeline throughput runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s work/perf.xlsx --orders 200000
  %(prog)s work/clean.xlsx --orders 10000 --error-rate 0
        """,
    )
    parser.add_argument("output", type=Path, help="Output .xlsx path")
    parser.add_argument("--orders", type=int, default=50_000, help="Orders rows (default: 50,000)")
    parser.add_argument("--customers", type=int, default=1_000, help=f"Customers rows (max {MAX_CUSTOMERS})")
    parser.add_argument("--error-rate", type=float, default=0.01, help="Share of invalid rows (default: 0.01)")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    if args.orders <= 0:
        print("Error: --orders must be positive", file=sys.stderr)
        return 1
    if not 1 <= args.customers <= MAX_CUSTOMERS:
        print(f"Error: --customers must be between 1 and {MAX_CUSTOMERS}", file=sys.stderr)
        return 1
    if not 0.0 <= args.error_rate < 1.0:
        print("Error: --error-rate must be in [0, 1)", file=sys.stderr)
        return 1

    create_workbook(args.output, args.orders, args.customers, args.error_rate, args.seed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
