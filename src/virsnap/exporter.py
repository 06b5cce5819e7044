"""
VM export operations.

Copies the disk images of a VM into an output directory with rsync and
stores the domain descriptor next to them, with disk sources rewritten to
the copied files.
"""

import os
import re
import shutil
import subprocess
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional

from .exceptions import ExportError, HypervisorError, ValidationError
from .hypervisor import VM, parse_disks
from .logging import StructuredLogger, logger

DESCRIPTOR_FILENAME = "descriptor.xml"


def sanitize_name(name: str) -> str:
    """Turn a VM name into a safe directory name."""
    sanitized = re.sub(r"[^A-Za-z0-9._-]+", "_", name).lstrip(".")
    return sanitized or "_"


def ensure_directory(path: str) -> str:
    """
    Make sure ``path`` is a readable and writable directory, creating it if needed.

    Returns:
        str: The absolute path

    Raises:
        ExportError: If the path is not a usable directory
    """
    directory = Path(path).expanduser().resolve()
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except FileExistsError:
        raise ExportError("does not point to a directory", str(directory))
    except OSError as e:
        raise ExportError(f"could not create directory: {e}", str(directory))

    if not os.access(directory, os.R_OK | os.W_OK):
        raise ExportError("directory is not readable or writable", str(directory))

    return str(directory)


class RsyncSyncer:
    """Minimal wrapper around ``rsync -avP <source> <destination>``."""

    def __init__(
        self,
        rsync_path: Optional[str] = None,
        bandwidth_limit: Optional[str] = None,
        log: Optional[StructuredLogger] = None,
    ) -> None:
        if bandwidth_limit and not re.match(r"^\d+[KMG]?$", bandwidth_limit):
            raise ValidationError(
                f"Invalid bandwidth limit format: {bandwidth_limit}", "bandwidth_limit"
            )
        self.rsync_path = rsync_path
        self.bandwidth_limit = bandwidth_limit
        self.logger = log or logger

    def build_command(self, source: str, destination: str) -> List[str]:
        rsync = self.rsync_path or shutil.which("rsync")
        if not rsync:
            raise ExportError("could not find rsync", source)

        cmd = [rsync, "-avP"]
        if self.bandwidth_limit:
            cmd.extend(["--bwlimit", self.bandwidth_limit])
        cmd.extend([source, destination])
        return cmd

    def sync(self, source: str, destination: str) -> None:
        """Mirror ``source`` to ``destination``."""
        cmd = self.build_command(source, destination)
        self.logger.debug(f"Executing command '{' '.join(cmd)}'", source=source)
        try:
            subprocess.run(cmd, check=True)
        except subprocess.CalledProcessError as e:
            raise ExportError(f"rsync exited with code {e.returncode}", source)
        except OSError as e:
            raise ExportError(f"could not run rsync: {e}", source)


def rewrite_disk_sources(xml_desc: str) -> str:
    """Point every file-backed disk of a domain descriptor at ``./<basename>``."""
    root = ET.fromstring(xml_desc)
    for disk_elem in root.findall("./devices/disk"):
        if disk_elem.get("device", "disk") != "disk":
            continue
        source = disk_elem.find("source")
        if source is not None and source.get("file"):
            source.set("file", "./" + os.path.basename(source.get("file")))
    return ET.tostring(root, encoding="unicode")


def export_vm(
    vm: VM,
    output_dir: str,
    syncer: RsyncSyncer,
    log: Optional[StructuredLogger] = None,
) -> List[str]:
    """
    Export the disks and descriptor of ``vm`` to ``output_dir/<vm name>``.

    Disk copy failures are logged and do not stop the export.

    Returns:
        List[str]: Paths of the disks that could not be copied

    Raises:
        ExportError: If the descriptor cannot be read or written
    """
    log = log or logger
    try:
        xml_desc = vm.descriptor()
    except HypervisorError as e:
        raise ExportError(f"unable to get XML descriptor of VM: {e.message}", vm.name)

    vm_dir = ensure_directory(os.path.join(output_dir, sanitize_name(vm.name)))

    failed = []
    for disk in parse_disks(xml_desc):
        if not disk.path:
            log.error(f"Could not get the file path of disk '{disk.target}'", vm_name=vm.name)
            failed.append(disk.target)
            continue

        destination = os.path.join(vm_dir, os.path.basename(disk.path))
        try:
            syncer.sync(disk.path, destination)
        except ExportError as e:
            log.error(f"Could not sync the disk '{disk.path}': {e.message}", vm_name=vm.name)
            failed.append(disk.path)
            continue
        log.info(
            f"Exported {disk.format} disk {disk.path} of VM {vm.name}",
            vm_name=vm.name,
            disk=disk.path,
            disk_format=disk.format,
        )

    descriptor_path = os.path.join(vm_dir, DESCRIPTOR_FILENAME)
    try:
        with open(descriptor_path, "w") as f:
            f.write(rewrite_disk_sources(xml_desc))
    except (OSError, ET.ParseError) as e:
        raise ExportError(f"could not write descriptor: {e}", descriptor_path)

    return failed
