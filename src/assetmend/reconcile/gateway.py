"""
assetmend.reconcile.gateway - 存储网关模块

对每个命名存储根（本地目录 / S3 兼容桶）提供统一的能力接口:
    list(prefix, recursive) -> 流式 (path, size, mtime, is_dir)
    read(path) -> bytes
    write(path, bytes, metadata)
    delete(path)
    exists(path) -> bool
    move(src, dst)        原生移动原语（默认 复制+删除）

并显式暴露嵌套检测所需的能力:
    backend_kind()  后端类型（local | object）
    bucket_id()     桶 / 基础目录标识
    root_path()     网关根路径（相对于桶）

调用方通过这些方法多态判断，不做运行时类型检查。

后端:
    LocalGateway   基于 pathlib 的本地目录，原子写入（临时文件 + rename）
    ObjectGateway  基于 boto3 的 S3/MinIO 兼容对象存储

配置（环境变量，ObjectGateway 未显式传入时读取）:
    ASSETMEND_S3_ENDPOINT    S3/MinIO 端点 URL
    ASSETMEND_S3_ACCESS_KEY  访问密钥
    ASSETMEND_S3_SECRET_KEY  密钥
    ASSETMEND_S3_REGION      区域（可选，默认 us-east-1）
"""

from __future__ import annotations

import logging
import os
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Union

from .errors import (
    GatewayError,
    GatewayUnreachableError,
    GatewayWriteError,
    ObjectNotFoundError,
    PathTraversalError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# 常量
# =============================================================================

BACKEND_LOCAL = "local"
BACKEND_OBJECT = "object"
VALID_BACKENDS = {BACKEND_LOCAL, BACKEND_OBJECT}

ENV_S3_ENDPOINT = "ASSETMEND_S3_ENDPOINT"
ENV_S3_ACCESS_KEY = "ASSETMEND_S3_ACCESS_KEY"
ENV_S3_SECRET_KEY = "ASSETMEND_S3_SECRET_KEY"
ENV_S3_REGION = "ASSETMEND_S3_REGION"

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_MAX_RETRIES = 3

# 原子写入临时文件标记
TEMP_MARKER = ".tmp-"


class GatewayObject(NamedTuple):
    """list() 产出的条目"""

    path: str
    size: int
    mtime: Optional[float]
    is_dir: bool


def normalize_path(path: str) -> str:
    """
    规范化网关内相对路径

    安全检查:
        1. 统一分隔符为 /
        2. 移除首尾斜杠
        3. 禁止 .. 组件
        4. 折叠 . 与多重斜杠

    Raises:
        PathTraversalError: 检测到路径穿越尝试
    """
    raw = (path or "").replace("\\", "/").strip()
    parts = [p for p in raw.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise PathTraversalError(
            "检测到路径穿越尝试: 路径包含 .. 组件",
            {"path": path},
        )
    return "/".join(parts)


# =============================================================================
# 抽象接口
# =============================================================================


class StorageGateway(ABC):
    """存储网关抽象基类"""

    def __init__(self, handle: str, name: Optional[str] = None):
        self.handle = handle
        self.name = name or handle

    @abstractmethod
    def backend_kind(self) -> str:
        """后端类型"""
        pass

    @abstractmethod
    def bucket_id(self) -> Optional[str]:
        """桶标识（同一后端类型下相同即视为同一个桶）"""
        pass

    @abstractmethod
    def root_path(self) -> str:
        """网关根路径（相对于桶，已去除首尾斜杠）"""
        pass

    @abstractmethod
    def list(self, prefix: str = "", recursive: bool = True) -> Iterator[GatewayObject]:
        """列出对象（流式）"""
        pass

    @abstractmethod
    def read(self, path: str) -> bytes:
        """读取对象内容"""
        pass

    @abstractmethod
    def write(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        """写入对象"""
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """删除对象（不存在时静默）"""
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        """检查对象是否存在"""
        pass

    def move(self, src: str, dst: str) -> None:
        """
        同一网关内移动对象

        默认实现为 读取 + 写入 + 删除，具体后端可覆盖为原生操作。
        """
        data = self.read(src)
        self.write(dst, data)
        self.delete(src)

    def describe(self) -> Dict[str, Any]:
        """网关诊断信息"""
        return {
            "handle": self.handle,
            "name": self.name,
            "backend": self.backend_kind(),
            "bucket": self.bucket_id(),
            "root": self.root_path(),
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.handle} {self.bucket_id()}:{self.root_path() or '/'}>"


# =============================================================================
# 本地目录后端
# =============================================================================


class LocalGateway(StorageGateway):
    """
    本地文件系统网关

    base_dir 相当于"桶"，root 为其下的子目录；
    两个共享 base_dir 的网关会按 root 做嵌套检测。

    安全特性:
        - 路径规范化后禁止 .. 组件
        - 使用 resolve() 验证路径确实在根目录之下
        - 原子写入（先写临时文件，再 os.replace）
    """

    def __init__(
        self,
        base_dir: Union[str, Path],
        root: str = "",
        handle: str = "local",
        name: Optional[str] = None,
    ):
        super().__init__(handle, name)
        self._base = Path(base_dir)
        self._root = normalize_path(root)

    @property
    def base_dir(self) -> Path:
        return self._base

    @property
    def directory(self) -> Path:
        """网关根目录的实际路径"""
        return self._base / self._root if self._root else self._base

    def backend_kind(self) -> str:
        return BACKEND_LOCAL

    def bucket_id(self) -> Optional[str]:
        return str(self._base.resolve())

    def root_path(self) -> str:
        return self._root

    def _full_path(self, path: str) -> Path:
        normalized = normalize_path(path)
        if not normalized:
            raise PathTraversalError("路径为空或无效", {"path": path})
        full_path = self.directory / normalized
        resolved_root = self.directory.resolve()
        resolved_path = full_path.resolve()
        if resolved_path != resolved_root and not str(resolved_path).startswith(
            str(resolved_root) + os.sep
        ):
            raise PathTraversalError(
                "检测到路径逃逸: 解析后的路径不在根目录下",
                {"path": normalized, "resolved_path": str(resolved_path), "root": str(resolved_root)},
            )
        return full_path

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.directory).as_posix()

    def list(self, prefix: str = "", recursive: bool = True) -> Iterator[GatewayObject]:
        start = self.directory / normalize_path(prefix) if prefix else self.directory
        if not self.directory.is_dir():
            raise GatewayUnreachableError(
                f"网关根目录不存在: {self.directory}",
                {"handle": self.handle, "root": str(self.directory)},
            )
        if not start.exists():
            return
        try:
            if recursive:
                for dirpath, dirnames, filenames in os.walk(start):
                    dirnames.sort()
                    current = Path(dirpath)
                    for dirname in dirnames:
                        yield GatewayObject(self._relative(current / dirname), 0, None, True)
                    for filename in sorted(filenames):
                        if filename.startswith(".") and TEMP_MARKER in filename:
                            continue
                        file_path = current / filename
                        stat = file_path.stat()
                        yield GatewayObject(self._relative(file_path), stat.st_size, stat.st_mtime, False)
            else:
                for entry in sorted(start.iterdir()):
                    if entry.name.startswith(".") and TEMP_MARKER in entry.name:
                        continue
                    if entry.is_dir():
                        yield GatewayObject(self._relative(entry), 0, None, True)
                    else:
                        stat = entry.stat()
                        yield GatewayObject(self._relative(entry), stat.st_size, stat.st_mtime, False)
        except OSError as e:
            raise GatewayUnreachableError(
                f"列出目录失败: {start}",
                {"handle": self.handle, "prefix": prefix, "error": str(e)},
            )

    def read(self, path: str) -> bytes:
        full_path = self._full_path(path)
        try:
            return full_path.read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(
                f"文件不存在: {path}",
                {"handle": self.handle, "path": path},
            )
        except OSError as e:
            raise GatewayError(
                f"读取文件失败: {path}",
                {"handle": self.handle, "path": path, "error": str(e)},
            )

    def _temp_path(self, target: Path) -> Path:
        suffix = f"{os.getpid()}-{random.randint(0, 0xFFFFFF):06x}"
        return target.parent / f".{target.name}{TEMP_MARKER}{suffix}"

    def write(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        full_path = self._full_path(path)
        temp_path = self._temp_path(full_path)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                f.write(data)
            os.replace(temp_path, full_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise GatewayWriteError(
                f"写入文件失败: {path}",
                {"handle": self.handle, "path": path, "error": str(e)},
            )

    def delete(self, path: str) -> None:
        full_path = self._full_path(path)
        try:
            if full_path.is_dir():
                full_path.rmdir()
            elif full_path.exists():
                full_path.unlink()
        except OSError as e:
            raise GatewayError(
                f"删除失败: {path}",
                {"handle": self.handle, "path": path, "error": str(e)},
            )

    def exists(self, path: str) -> bool:
        try:
            return self._full_path(path).is_file()
        except PathTraversalError:
            return False

    def move(self, src: str, dst: str) -> None:
        source = self._full_path(src)
        target = self._full_path(dst)
        if not source.is_file():
            raise ObjectNotFoundError(
                f"源文件不存在，无法读取 file stream: {src}",
                {"handle": self.handle, "path": src},
            )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)
        except OSError as e:
            raise GatewayError(
                f"移动文件失败: {src} -> {dst}",
                {"handle": self.handle, "src": src, "dst": dst, "error": str(e)},
            )


# =============================================================================
# 对象存储后端
# =============================================================================


class ObjectGateway(StorageGateway):
    """
    对象存储网关（S3/MinIO 兼容）

    root（即 prefix）是桶内的根路径，所有相对路径都会拼接在其后。
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        handle: str = "object",
        name: Optional[str] = None,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        retries: int = DEFAULT_MAX_RETRIES,
        client: Any = None,
    ):
        """
        初始化对象存储网关

        Args:
            bucket: 存储桶名称
            prefix: 网关根路径
            handle: 网关标识
            name: 显示名称
            endpoint: S3 端点 URL（None 时读取环境变量，仍为空则使用 AWS 默认端点）
            access_key: 访问密钥
            secret_key: 密钥
            region: 区域
            connect_timeout: 连接超时秒数
            read_timeout: 读取超时秒数
            retries: 最大重试次数
            client: 预先构造的 boto3 客户端（测试注入）
        """
        super().__init__(handle, name)
        self.bucket = bucket
        self.prefix = normalize_path(prefix)
        self.endpoint = endpoint or os.environ.get(ENV_S3_ENDPOINT)
        self.access_key = access_key or os.environ.get(ENV_S3_ACCESS_KEY)
        self.secret_key = secret_key or os.environ.get(ENV_S3_SECRET_KEY)
        self.region = region or os.environ.get(ENV_S3_REGION, "us-east-1")
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.retries = retries
        self._client = client

    def backend_kind(self) -> str:
        return BACKEND_OBJECT

    def bucket_id(self) -> Optional[str]:
        # 不同端点上的同名桶不是同一个桶
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}"
        return self.bucket

    def root_path(self) -> str:
        return self.prefix

    def _get_client(self):
        """获取 S3 客户端（惰性初始化）"""
        if self._client is not None:
            return self._client

        import boto3
        from botocore.config import Config as BotoConfig

        try:
            config = BotoConfig(
                signature_version="s3v4",
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={"max_attempts": self.retries, "mode": "adaptive"},
            )
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region,
                config=config,
            )
            return self._client
        except Exception as e:
            raise GatewayUnreachableError(
                f"对象存储连接失败: {e}",
                {"endpoint": self.endpoint, "bucket": self.bucket, "error": str(e)},
            )

    def _key(self, path: str) -> str:
        normalized = normalize_path(path)
        if self.prefix and normalized:
            return f"{self.prefix}/{normalized}"
        return self.prefix or normalized

    def _relative(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1:]
        return key

    def _classify_error(self, error: Exception, path: str) -> GatewayError:
        """将 S3 异常分类为具体的网关错误"""
        error_name = type(error).__name__
        error_str = str(error)
        detail = {"handle": self.handle, "bucket": self.bucket, "path": path, "error": error_str}

        if (
            "NoSuchKey" in error_name
            or "NoSuchKey" in error_str
            or "404" in error_str
            or "Not Found" in error_str
        ):
            return ObjectNotFoundError(f"对象不存在: {path}", detail)
        if (
            "EndpointConnectionError" in error_name
            or "ConnectTimeout" in error_name
            or "NoSuchBucket" in error_str
            or "timeout" in error_str.lower()
        ):
            return GatewayUnreachableError(f"对象存储不可达: {self.bucket}", detail)
        return GatewayError(f"对象存储操作失败: {path}", detail)

    def list(self, prefix: str = "", recursive: bool = True) -> Iterator[GatewayObject]:
        client = self._get_client()
        key_prefix = self._key(prefix)
        if key_prefix:
            key_prefix += "/"
        params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": key_prefix}
        if not recursive:
            params["Delimiter"] = "/"
        try:
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**params):
                for common in page.get("CommonPrefixes", []) or []:
                    yield GatewayObject(self._relative(common["Prefix"].rstrip("/")), 0, None, True)
                for item in page.get("Contents", []) or []:
                    key = item["Key"]
                    if key.endswith("/"):
                        yield GatewayObject(self._relative(key.rstrip("/")), 0, None, True)
                        continue
                    modified = item.get("LastModified")
                    yield GatewayObject(
                        self._relative(key),
                        int(item.get("Size", 0)),
                        modified.timestamp() if modified is not None else None,
                        False,
                    )
        except GatewayError:
            raise
        except Exception as e:
            raise GatewayUnreachableError(
                f"列出对象失败: {self.bucket}/{key_prefix}",
                {"handle": self.handle, "bucket": self.bucket, "prefix": key_prefix, "error": str(e)},
            )

    def read(self, path: str) -> bytes:
        client = self._get_client()
        key = self._key(path)
        try:
            response = client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except Exception as e:
            raise self._classify_error(e, path)

    def write(self, path: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        client = self._get_client()
        key = self._key(path)
        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if metadata:
            params["Metadata"] = {str(k): str(v) for k, v in metadata.items()}
        try:
            client.put_object(**params)
        except Exception as e:
            classified = self._classify_error(e, path)
            if isinstance(classified, GatewayUnreachableError):
                raise classified
            raise GatewayWriteError(f"写入对象失败: {path}", classified.details)

    def delete(self, path: str) -> None:
        client = self._get_client()
        try:
            client.delete_object(Bucket=self.bucket, Key=self._key(path))
        except Exception as e:
            raise self._classify_error(e, path)

    def exists(self, path: str) -> bool:
        client = self._get_client()
        try:
            client.head_object(Bucket=self.bucket, Key=self._key(path))
            return True
        except Exception as e:
            classified = self._classify_error(e, path)
            if isinstance(classified, ObjectNotFoundError):
                return False
            raise classified

    def move(self, src: str, dst: str) -> None:
        client = self._get_client()
        source_key = self._key(src)
        try:
            client.copy_object(
                Bucket=self.bucket,
                Key=self._key(dst),
                CopySource={"Bucket": self.bucket, "Key": source_key},
            )
            client.delete_object(Bucket=self.bucket, Key=source_key)
        except Exception as e:
            raise self._classify_error(e, src)


# =============================================================================
# 容器注册表
# =============================================================================


@dataclass
class Container:
    """命名存储根：记录与文件的共同分组"""

    id: int
    name: str
    handle: str
    gateway: StorageGateway


class ContainerRegistry:
    """容器注册表（按 id 去重，支持 id / handle 查找）"""

    def __init__(self, containers: Optional[Iterable[Container]] = None):
        self._by_id: Dict[int, Container] = {}
        for container in containers or []:
            self.add(container)

    def add(self, container: Container) -> None:
        if container.id in self._by_id:
            logger.debug("容器 %s 已注册，忽略重复项", container.id)
            return
        self._by_id[container.id] = container

    def get(self, container_id: int) -> Container:
        try:
            return self._by_id[container_id]
        except KeyError:
            raise GatewayError(
                f"未注册的容器: {container_id}",
                {"container_id": container_id, "known": sorted(self._by_id)},
            )

    def find(self, container_id: int) -> Optional[Container]:
        return self._by_id.get(container_id)

    def by_handle(self, handle: str) -> Container:
        for container in self._by_id.values():
            if container.handle == handle:
                return container
        raise GatewayError(
            f"未注册的容器: {handle}",
            {"handle": handle, "known": [c.handle for c in self._by_id.values()]},
        )

    def gateway(self, container_id: int) -> StorageGateway:
        return self.get(container_id).gateway

    def all(self) -> List[Container]:
        return list(self._by_id.values())

    def ids(self) -> List[int]:
        return list(self._by_id)

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id.values())


# =============================================================================
# 工厂
# =============================================================================


def get_gateway(backend: str, **kwargs) -> StorageGateway:
    """
    创建网关实例

    Args:
        backend: 后端类型（local, object）
        **kwargs: 传递给具体网关的参数
            - local 后端: base_dir, root, handle, name
            - object 后端: bucket, prefix, handle, name, endpoint, access_key,
                           secret_key, region, connect_timeout, read_timeout, retries, client

    示例:
        gateway = get_gateway("local", base_dir="/srv/assets", root="images", handle="images")
        gateway = get_gateway("object", bucket="my-assets", prefix="images", handle="images")
    """
    backend = (backend or BACKEND_LOCAL).lower()
    if backend == BACKEND_LOCAL:
        local_kwargs = {k: v for k, v in kwargs.items() if k in ("base_dir", "root", "handle", "name")}
        return LocalGateway(**local_kwargs)
    if backend == BACKEND_OBJECT:
        object_kwargs = {
            k: v
            for k, v in kwargs.items()
            if k in (
                "bucket", "prefix", "handle", "name", "endpoint", "access_key", "secret_key",
                "region", "connect_timeout", "read_timeout", "retries", "client",
            )
        }
        return ObjectGateway(**object_kwargs)
    raise ValueError(f"无效的网关后端: {backend}，有效值: {', '.join(sorted(VALID_BACKENDS))}")


def build_registry(container_configs: Iterable[Any]) -> ContainerRegistry:
    """从 ContainerConfig 列表构造容器注册表"""
    registry = ContainerRegistry()
    for cfg in container_configs:
        if cfg.backend == BACKEND_OBJECT:
            gateway = get_gateway(
                BACKEND_OBJECT,
                bucket=cfg.bucket,
                prefix=cfg.prefix or cfg.root,
                handle=cfg.handle,
                name=cfg.name,
                endpoint=cfg.endpoint,
                region=cfg.region,
            )
        else:
            gateway = get_gateway(
                BACKEND_LOCAL,
                base_dir=cfg.root,
                root=cfg.prefix,
                handle=cfg.handle,
                name=cfg.name,
            )
        registry.add(Container(id=cfg.id, name=cfg.name, handle=cfg.handle, gateway=gateway))
    return registry
