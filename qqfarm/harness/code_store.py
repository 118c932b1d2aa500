# Copyright 2025 The qqfarm Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""On-disk store for the last login code that worked.

The code is the only state kept across restarts. Storage problems are
logged and never stop the client.
"""

import os
from pathlib import Path
from typing import Optional, Union

from absl import logging

DEFAULT_CODE_FILE = ".farmcode"


class CodeStore:
  """Reads, writes and forgets the saved login code."""

  def __init__(self, path: Union[str, os.PathLike, None] = None):
    self.path = Path(path if path is not None else DEFAULT_CODE_FILE)

  def load(self) -> Optional[str]:
    """Returns the saved code, or None if there is none."""
    try:
      code = self.path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
      return None
    except OSError as e:
      logging.warning("Could not read saved code from %s: %s", self.path, e)
      return None
    return code or None

  def save(self, code: str) -> bool:
    try:
      self.path.write_text(code, encoding="utf-8")
    except OSError as e:
      logging.warning("Could not save code to %s: %s", self.path, e)
      return False
    logging.info("Saved login code to %s", self.path)
    return True

  def delete(self) -> bool:
    """Removes the saved code. Returns True if a file was removed."""
    try:
      self.path.unlink()
    except FileNotFoundError:
      return False
    except OSError as e:
      logging.warning("Could not delete saved code %s: %s", self.path, e)
      return False
    logging.info("Deleted saved login code %s", self.path)
    return True
