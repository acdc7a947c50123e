"""
Built-in Windows inspection tasks.

Each task wraps one system tool (PowerShell CIM queries, dxdiag, wevtutil,
...) or one in-process read (registry, HOSTS file, minidumps). Ids are the
display names lowercased with spaces replaced by underscores.

Missing executables or resources fail only their own task.
"""

import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .catalog import TaskCatalog
from .errors import TaskFailure
from .executor import TaskContext
from .models import Artifact, TaskCategory, TaskDescriptor

Execute = Callable[[TaskContext], Awaitable[object]]

DXDIAG_TIMEOUT = 60.0
MINIDUMP_LIMIT = 3

UNINSTALL_KEYS = (
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall",
    r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall",
)

DESCRIPTIONS = {
    "Computer System": "Hardware and system information",
    "Operating System": "Windows version and configuration",
    "BIOS": "Firmware and boot settings",
    "BaseBoard": "Motherboard specifications",
    "Processor": "CPU details and capabilities",
    "Physical Memory": "RAM configuration and usage",
    "Network Adapter": "Network interfaces and settings",
    "Disk Drive": "Storage devices and partitions",
    "DXDiag": "DirectX and graphics diagnostics",
    "System Services": "Windows services status",
    "Processes": "Running applications and tasks",
    "Event Logs": "System and application logs",
}

CATEGORIES = {
    "Computer System": TaskCategory.SYSTEM,
    "Operating System": TaskCategory.SYSTEM,
    "BIOS": TaskCategory.SYSTEM,
    "BaseBoard": TaskCategory.SYSTEM,
    "Processor": TaskCategory.HARDWARE,
    "Physical Memory": TaskCategory.HARDWARE,
    "Network Adapter": TaskCategory.NETWORK,
    "IPConfig": TaskCategory.NETWORK,
    "Disk Drive": TaskCategory.STORAGE,
    "Disk Partition": TaskCategory.STORAGE,
    "Chkdsk": TaskCategory.STORAGE,
    "System Services": TaskCategory.SERVICES,
    "Processes": TaskCategory.SERVICES,
    "Scheduled Tasks": TaskCategory.SERVICES,
    "Event Logs": TaskCategory.LOGS,
    "Windows Update Log": TaskCategory.LOGS,
    "DXDiag": TaskCategory.DRIVERS,
    "Drivers": TaskCategory.DRIVERS,
    "Driver Verifier": TaskCategory.DRIVERS,
}

DEFAULT_DESCRIPTION = "System diagnostic information"


def task_id(name: str) -> str:
    return name.lower().replace(" ", "_")


def system_root() -> Path:
    return Path(os.environ.get("SystemRoot", r"C:\Windows"))


# ==================== Task bodies ====================

def cim_query(class_name: str, filename: str) -> Execute:
    """Dump every property of every instance of a CIM class."""
    async def execute(ctx: TaskContext) -> Artifact:
        stdout = await ctx.run_command([
            "powershell", "-NoProfile", "-NonInteractive", "-Command",
            f"Get-CimInstance -ClassName {class_name} | Format-List *",
        ])
        return Artifact(f"{filename}.txt", stdout)
    return execute


def command_output(argv: list[str], filename: str, timeout: Optional[float] = None) -> Execute:
    """Capture the stdout of a single command."""
    async def execute(ctx: TaskContext) -> Artifact:
        stdout = await ctx.run_command(argv, timeout=timeout)
        return Artifact(f"{filename}.txt", stdout)
    return execute


async def run_dxdiag(ctx: TaskContext) -> Artifact:
    target = ctx.workdir / "DxDiag.txt"
    await ctx.run_command(["dxdiag", "/t", str(target), "/whql:off"], timeout=DXDIAG_TIMEOUT)
    return await ctx.read_artifact(target, "DxDiag.txt")


async def export_event_logs(ctx: TaskContext) -> list[Artifact]:
    artifacts = []
    for channel in ("System", "Application"):
        target = ctx.workdir / f"{channel}.evtx"
        await ctx.run_command(["wevtutil", "epl", channel, str(target), "/ow:true"])
        artifacts.append(await ctx.read_artifact(target, f"{channel}.evtx", "application/octet-stream"))
    return artifacts


def read_uninstall_keys() -> str:
    """List installed programs from the machine-wide Uninstall registry keys."""
    import winreg

    lines = ["Installed Programs from Registry:", ""]
    for key_path in UNINSTALL_KEYS:
        lines.append(f"=== {key_path} ===")
        try:
            root = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key_path)
        except OSError as e:
            lines.append(f"Registry access failed: {e}")
            lines.append("")
            continue

        with root:
            index = 0
            while True:
                try:
                    subkey_name = winreg.EnumKey(root, index)
                except OSError:
                    break
                index += 1
                try:
                    with winreg.OpenKey(root, subkey_name) as subkey:
                        name, _ = winreg.QueryValueEx(subkey, "DisplayName")
                        try:
                            version, _ = winreg.QueryValueEx(subkey, "DisplayVersion")
                        except OSError:
                            version = ""
                except OSError:
                    continue
                lines.append(f"{name} {version}".rstrip())
        lines.append("")
    return "\n".join(lines)


async def collect_installed_programs(ctx: TaskContext) -> Artifact:
    if sys.platform != "win32":
        raise TaskFailure("Installed programs collection is only available on Windows")
    text = await ctx.run_blocking(read_uninstall_keys)
    return Artifact("InstalledPrograms.txt", text.encode("utf-8"))


async def copy_hosts_file(ctx: TaskContext) -> Artifact:
    path = system_root() / "System32" / "drivers" / "etc" / "hosts"
    if not path.exists():
        raise TaskFailure(f"HOSTS file not found at {path}")
    data = await ctx.run_blocking(path.read_bytes)
    return Artifact("hosts.txt", data)


async def run_battery_report(ctx: TaskContext) -> Artifact:
    target = ctx.workdir / "BatteryReport.html"
    await ctx.run_command(["powercfg", "/batteryreport", "/output", str(target)])
    return await ctx.read_artifact(target, "BatteryReport.html", "text/html")


def newest_minidumps(directory: Path, limit: int = MINIDUMP_LIMIT) -> list[Path]:
    if not directory.is_dir():
        return []
    dumps = [p for p in directory.iterdir() if p.suffix.lower() == ".dmp" and p.is_file()]
    dumps.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return dumps[:limit]


async def collect_minidumps(ctx: TaskContext) -> list[Artifact]:
    source = system_root() / "Minidump"
    dumps = await ctx.run_blocking(newest_minidumps, source)
    if not dumps:
        return [Artifact("Minidump.txt", f"No minidump files found in {source}\n".encode("utf-8"))]
    return [
        Artifact(p.name, await ctx.run_blocking(p.read_bytes), "application/octet-stream")
        for p in dumps
    ]


# ==================== Catalog ====================

# (name, requires elevation, execute)
BUILTIN_TASKS: list[tuple[str, bool, Execute]] = [
    ("Computer System", False, cim_query("Win32_ComputerSystem", "CompSystem")),
    ("Operating System", False, cim_query("Win32_OperatingSystem", "OS")),
    ("BIOS", False, cim_query("Win32_BIOS", "BIOS")),
    ("BaseBoard", False, cim_query("Win32_BaseBoard", "BaseBoard")),
    ("Processor", False, cim_query("Win32_Processor", "Processor")),
    ("Physical Memory", False, cim_query("Win32_PhysicalMemory", "PhysicalMemory")),
    ("Device Memory Address", False, cim_query("Win32_DeviceMemoryAddress", "DevMemAddr")),
    ("DMA Channel", False, cim_query("Win32_DMAChannel", "DMAChannel")),
    ("IRQ Resource", False, cim_query("Win32_IRQResource", "IRQResource")),
    ("Disk Drive", False, cim_query("Win32_DiskDrive", "DiskDrive")),
    ("Disk Partition", False, cim_query("Win32_DiskPartition", "DiskPartition")),
    ("System Devices", False, cim_query("Win32_SystemDevices", "SysDevices")),
    ("Network Adapter", False, cim_query("Win32_NetworkAdapter", "NetAdapter")),
    ("Printer", False, cim_query("Win32_Printer", "Printer")),
    ("Environment", False, cim_query("Win32_Environment", "Environment")),
    ("Startup Command", False, cim_query("Win32_StartupCommand", "StartupCmd")),
    ("System Driver", False, cim_query("Win32_SystemDriver", "SysDriver")),
    ("DXDiag", False, run_dxdiag),
    ("SystemInfo", False, command_output(["systeminfo"], "SystemInfo")),
    ("Drivers", False, cim_query("Win32_PnPSignedDriver", "DriversList")),
    ("Event Logs", False, export_event_logs),
    ("IPConfig", False, command_output(["ipconfig", "/all"], "NetworkConfig")),
    ("Installed Programs", False, collect_installed_programs),
    ("Windows Store Apps", False, command_output([
        "powershell", "-NoProfile", "-NonInteractive", "-Command",
        "Get-AppxPackage | Select-Object Name, Version | Out-String -Width 4096",
    ], "StoreApps")),
    ("System Services", False, command_output(["sc", "query"], "SystemServices")),
    ("Processes", False, command_output(["tasklist", "/v"], "RunningProcesses")),
    ("Performance Data", False, command_output(["typeperf", "-qx"], "PerformanceData")),
    ("HOSTS File", False, copy_hosts_file),
    ("Dsregcmd", False, command_output(["dsregcmd", "/status"], "DsRegCmd")),
    ("Scheduled Tasks", False, command_output(["schtasks", "/query"], "ScheduledTasks")),
    ("Windows Update Log", False, command_output([
        "wevtutil", "qe", "Microsoft-Windows-WindowsUpdateClient/Operational", "/f:text",
    ], "WindowsUpdate")),
    ("Chkdsk", True, command_output(["chkdsk", "C:", "/scan"], "Chkdsk")),
    ("DISM CheckHealth", True, command_output(
        ["dism", "/online", "/cleanup-image", "/checkhealth"], "DISMCheckHealth"
    )),
    ("Battery Report", True, run_battery_report),
    ("Driver Verifier", True, command_output(["verifier", "/querysettings"], "DriverVerifierSettings")),
    ("BSOD Minidump", True, collect_minidumps),
]


def builtin_descriptors() -> list[TaskDescriptor]:
    return [
        TaskDescriptor(
            id=task_id(name),
            display_name=name,
            description=DESCRIPTIONS.get(name, DEFAULT_DESCRIPTION),
            category=CATEGORIES.get(name, TaskCategory.OTHER),
            requires_elevation=requires_elevation,
            execute=execute,
        )
        for name, requires_elevation, execute in BUILTIN_TASKS
    ]


def default_catalog() -> TaskCatalog:
    """Catalog of every built-in Windows inspection task."""
    return TaskCatalog(builtin_descriptors())
