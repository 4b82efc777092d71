from pathlib import Path

import pytest

from luksdev.lib.disk.sysfs import SysFs
from luksdev.lib.luks.mapper import DeviceMapperResolver
from luksdev.lib.models.luks import MapperInfo


def _holders(sysfs_root: Path, name: str) -> Path:
	holders = sysfs_root / 'class' / 'block' / name / 'holders'
	holders.mkdir(parents=True)
	return holders


def _dm_node(sysfs_root: Path, node: str, name: str) -> None:
	dm_dir = sysfs_root / 'class' / 'block' / node / 'dm'
	dm_dir.mkdir(parents=True)
	(dm_dir / 'name').write_text(f'{name}\n')


@pytest.fixture
def resolver(sysfs_root: Path) -> DeviceMapperResolver:
	return DeviceMapperResolver(SysFs(sysfs_root))


def test_no_holders_directory(resolver: DeviceMapperResolver) -> None:
	assert resolver.resolve(Path('/nonexistent/sdx1')) is None


def test_empty_holders(resolver: DeviceMapperResolver, sysfs_root: Path) -> None:
	_holders(sysfs_root, 'sdx1')
	assert resolver.resolve(Path('/nonexistent/sdx1')) is None


def test_single_dm_holder(resolver: DeviceMapperResolver, sysfs_root: Path) -> None:
	(_holders(sysfs_root, 'sdx1') / 'dm-3').touch()
	_dm_node(sysfs_root, 'dm-3', 'luks-sdx1')

	assert resolver.resolve(Path('/nonexistent/sdx1')) == MapperInfo(
		name='luks-sdx1',
		dev_path=Path('/dev/mapper/luks-sdx1'),
	)


def test_dm_holder_without_name(resolver: DeviceMapperResolver, sysfs_root: Path) -> None:
	(_holders(sysfs_root, 'sdx1') / 'dm-7').touch()

	assert resolver.resolve(Path('/nonexistent/sdx1')) == MapperInfo(name='dm-7', dev_path=Path('/dev/dm-7'))


def test_non_dm_holder(resolver: DeviceMapperResolver, sysfs_root: Path) -> None:
	(_holders(sysfs_root, 'sdx1') / 'md127').touch()

	assert resolver.resolve(Path('/nonexistent/sdx1')) == MapperInfo(name='md127', dev_path=Path('/dev/md127'))


def test_multiple_holders_are_not_mapped(resolver: DeviceMapperResolver, sysfs_root: Path) -> None:
	holders = _holders(sysfs_root, 'sdx1')
	(holders / 'dm-0').touch()
	(holders / 'dm-1').touch()
	_dm_node(sysfs_root, 'dm-0', 'first')
	_dm_node(sysfs_root, 'dm-1', 'second')

	assert resolver.resolve(Path('/nonexistent/sdx1')) is None


def test_symlinked_device_uses_kernel_name(resolver: DeviceMapperResolver, sysfs_root: Path, tmp_path: Path) -> None:
	node = tmp_path / 'sdx2'
	node.touch()
	link = tmp_path / 'by-uuid-1234'
	link.symlink_to(node)

	(_holders(sysfs_root, 'sdx2') / 'dm-0').touch()
	_dm_node(sysfs_root, 'dm-0', 'cryptroot')

	mapper = resolver.resolve(link)

	assert mapper is not None
	assert mapper.name == 'cryptroot'


def test_mapper_paths_follow_configured_dev_root(resolver: DeviceMapperResolver, sysfs_root: Path, luks_config) -> None:
	luks_config.dev_root = Path('/altdev')
	(_holders(sysfs_root, 'sdx1') / 'dm-0').touch()
	_dm_node(sysfs_root, 'dm-0', 'data')

	mapper = resolver.resolve(Path('/nonexistent/sdx1'))

	assert mapper is not None
	assert mapper.dev_path == Path('/altdev/mapper/data')
