# Sidecar - run commands in a neighbouring container over a shared socket
# Copyright (C) 2026 Sidecar Authors
# SPDX-License-Identifier: Apache-2.0

from sidecar.cli.parser import cli_main

cli_main()
