# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import dnninfer.profiler

dnninfer.profiler.main()
