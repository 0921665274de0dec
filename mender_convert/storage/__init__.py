"""Block devices, partition tables and filesystems of disk images.

Main Components:
    - inspector: inspect(), inspect_target()
    - shrink: FilesystemShrinker
    - layout: plan()
    - disk_builder: DiskBuilder
    - device_map: DeviceMapManager, LoopDeviceManager
    - mount: MountOrchestrator
"""
