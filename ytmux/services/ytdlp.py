from typing import List, NamedTuple
import asyncio
from ytmux.config.settings import SourceConfig

class CompletedProcess(NamedTuple):
    """Subprocess result"""
    returncode: int
    stdout: bytes
    stderr: bytes

class SubprocessExecutor:
    """Execute subprocess with consistent error handling"""

    @staticmethod
    async def run(
        cmd: List[str],
        timeout: float,
        capture_stderr: bool = True
    ) -> CompletedProcess:
        """
        Run subprocess with timeout and proper cleanup.
        Prevents process leaks and ensures consistent error handling.
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE if capture_stderr else asyncio.subprocess.DEVNULL,
            stdin=asyncio.subprocess.DEVNULL
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout
            )

            return CompletedProcess(
                returncode=process.returncode,
                stdout=stdout,
                stderr=stderr if capture_stderr else b""
            )

        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

class YTDLPCommandBuilder:
    """Build yt-dlp commands"""

    def __init__(self, settings: SourceConfig):
        self.settings = settings

    def _common_options(self) -> List[str]:
        cmd = [
            '--no-playlist',
            '--socket-timeout', str(self.settings.socket_timeout),
            '--retries', str(self.settings.retries),
        ]

        if self.settings.cookie:
            cmd.extend(['--add-header', f'Cookie:{self.settings.cookie}'])

        if self.settings.js_runtime:
            cmd.extend(['--js-runtimes', self.settings.js_runtime])

        return cmd

    def build_version_command(self) -> List[str]:
        return [self.settings.ytdlp_path, '--version']

    def build_info_command(self, url: str) -> List[str]:
        """Build command for fetching video info"""
        cmd = [self.settings.ytdlp_path, '--dump-json', '--skip-download']
        cmd.extend(self._common_options())

        if not self.settings.enable_live_streams:
            cmd.extend(['--match-filter', '!is_live'])

        cmd.extend(['--', url])
        return cmd

    def build_stream_command(self, url: str, itag: str) -> List[str]:
        """Build command writing exactly one rendition to stdout"""
        cmd = [
            self.settings.ytdlp_path,
            '-f', itag,
            '-o', '-',
        ]
        cmd.extend(self._common_options())

        # NOTE: Do NOT use --print here as it mixes with binary output in stdout
        cmd.extend(['--no-progress', '--quiet'])

        cmd.extend(['--', url])
        return cmd
