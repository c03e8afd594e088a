#!/usr/bin/env python3
from __future__ import annotations

import aws_cdk as cdk

from demos.rds_init_example import RdsInitStackExample

app = cdk.App()

stack_name = app.node.try_get_context("stackName") or "RdsInitExample"
RdsInitStackExample(app, stack_name)

app.synth()
