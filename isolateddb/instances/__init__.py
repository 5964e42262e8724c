# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.
