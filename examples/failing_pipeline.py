"""Failing pipeline — shows how errors are reported.

`parse` fails on one slice; with --keep-going the other branches still
commit and `checksum` keeps running, while `report` is skipped.

    tessera make examples/failing_pipeline.py --keep-going
    tessera progress
"""

from tessera import target

target("raw", "['1', '2', 'three', '4']")
target("parse", "int(raw[0])", pattern="raw")
target("report", "sum(parse)")
target("checksum", "len(raw)")
