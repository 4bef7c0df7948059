# zlink_node/supervisor/params.py - zk-SNARK parameter files needed by an embedded daemon
import logging
from pathlib import Path
from typing import Callable, List, Optional

import aiohttp

from zlink_node.config.config_manager import DaemonConfig
from zlink_node.core.exceptions import ProcessError
from zlink_node.supervisor.daemon_conf import default_params_dir

logger = logging.getLogger("zlink_node.supervisor.params")

ProgressCallback = Callable[[str, int, Optional[int]], None]

CHUNK_SIZE = 64 * 1024


class ParamsFetcher:
    """Checks the params directory and downloads missing files"""

    def __init__(self, config: DaemonConfig,
                 session: Optional[aiohttp.ClientSession] = None,
                 progress: Optional[ProgressCallback] = None):
        self.config = config
        self.params_dir = Path(config.params_dir).expanduser() if config.params_dir else default_params_dir()
        self._session = session
        self.progress = progress

    def missing(self) -> List[str]:
        missing = []
        for name in self.config.params_files:
            path = self.params_dir / name
            if not path.exists() or path.stat().st_size == 0:
                missing.append(name)
        return missing

    async def ensure(self) -> List[str]:
        """Download every missing params file; returns the names fetched"""
        missing = self.missing()
        if not missing:
            logger.debug(f"All zk params present in {self.params_dir}")
            return []

        logger.info(f"Fetching {len(missing)} zk params file(s) into {self.params_dir}")
        self.params_dir.mkdir(parents=True, exist_ok=True)

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            for name in missing:
                await self._download(session, name)
        finally:
            if owns_session:
                await session.close()
        return missing

    async def _download(self, session: aiohttp.ClientSession, name: str):
        url = self.config.params_base_url.rstrip('/') + '/' + name
        target = self.params_dir / name
        partial = target.with_suffix(target.suffix + '.part')

        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise ProcessError(f"Could not download {name}", f"HTTP {response.status} from {url}")
                total = response.content_length
                downloaded = 0
                with open(partial, 'wb') as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
                        downloaded += len(chunk)
                        if self.progress:
                            self.progress(name, downloaded, total)
        except aiohttp.ClientError as e:
            partial.unlink(missing_ok=True)
            raise ProcessError(f"Could not download {name}", str(e))

        if total is not None and downloaded != total:
            partial.unlink(missing_ok=True)
            raise ProcessError(f"Incomplete download of {name}", f"{downloaded}/{total} bytes")

        partial.replace(target)
        logger.info(f"Downloaded {name} ({downloaded} bytes)")
