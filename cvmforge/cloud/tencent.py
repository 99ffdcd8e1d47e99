"""Tencent Cloud CVM client.

Thin adapter over ``tencentcloud-sdk-python`` (CVM API 2017-03-12). Requests
are built from plain dicts and responses are read back as dicts, so the rest
of the code only sees the dataclasses from ``cvmforge.cloud.types``.

Example:
    from cvmforge.cloud.tencent import TencentCloud

    client = TencentCloud(secret_id="...", secret_key="...", region="ap-guangzhou")
    page = client.describe_images(image_ids=["img-xxxx"])
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from functools import cached_property
from typing import TYPE_CHECKING, Any

from loguru import logger
from tencentcloud.common import credential
from tencentcloud.common.exception.tencent_cloud_sdk_exception import (
    TencentCloudSDKException,
)
from tencentcloud.common.profile.client_profile import ClientProfile
from tencentcloud.common.profile.http_profile import HttpProfile
from tencentcloud.cvm.v20170312 import cvm_client, models

from cvmforge.cloud.types import Filters, Image, ImagePage, Instance, KeyPair, LaunchRequest
from cvmforge.exceptions import CloudAPIError

if TYPE_CHECKING:
    from cvmforge.config import AuthConfig

log = logger.bind(component="tencent")


def parse_image(raw: dict[str, Any]) -> Image:
    return Image(
        image_id=raw.get("ImageId") or "",
        name=raw.get("ImageName") or "",
        state=raw.get("ImageState") or "",
        description=raw.get("ImageDescription") or "",
        created_time=raw.get("CreatedTime") or "",
        image_type=raw.get("ImageType") or "",
    )


def parse_instance(raw: dict[str, Any]) -> Instance:
    return Instance(
        instance_id=raw.get("InstanceId") or "",
        state=raw.get("InstanceState") or "",
        name=raw.get("InstanceName") or "",
        private_ips=tuple(raw.get("PrivateIpAddresses") or ()),
        public_ips=tuple(raw.get("PublicIpAddresses") or ()),
    )


def launch_params(request: LaunchRequest) -> dict[str, Any]:
    """Translate a LaunchRequest into RunInstances parameters."""
    login: dict[str, Any] = {}
    if request.key_ids:
        login["KeyIds"] = list(request.key_ids)
    elif request.password:
        login["Password"] = request.password

    params: dict[str, Any] = {
        "Placement": {"Zone": request.zone, "ProjectId": request.project_id},
        "ImageId": request.image_id,
        "InstanceType": request.instance_type,
        "InstanceCount": 1,
        "InstanceName": request.instance_name,
        "VirtualPrivateCloud": {"VpcId": request.vpc_id, "SubnetId": request.subnet_id},
        "InternetAccessible": {
            "InternetMaxBandwidthOut": request.internet_max_bandwidth_out,
            "PublicIpAssigned": request.public_ip_assigned,
        },
    }
    if request.internet_charge_type:
        params["InternetAccessible"]["InternetChargeType"] = request.internet_charge_type
    if request.instance_charge_type:
        params["InstanceChargeType"] = request.instance_charge_type
    if request.system_disk_type or request.system_disk_size:
        disk: dict[str, Any] = {}
        if request.system_disk_type:
            disk["DiskType"] = request.system_disk_type
        if request.system_disk_size:
            disk["DiskSize"] = request.system_disk_size
        params["SystemDisk"] = disk
    if request.security_group_ids:
        params["SecurityGroupIds"] = list(request.security_group_ids)
    if login:
        params["LoginSettings"] = login
    if request.user_data:
        params["UserData"] = request.user_data
    return params


class TencentCloud:
    """CVM control-plane client bound to a single region."""

    def __init__(
        self,
        secret_id: str,
        secret_key: str,
        region: str,
        *,
        request_timeout: int = 60,
    ) -> None:
        self._secret_id = secret_id
        self._secret_key = secret_key
        self._region = region
        self._request_timeout = request_timeout

    @classmethod
    def from_config(cls, auth: AuthConfig) -> TencentCloud:
        return cls(auth.secret_id, auth.secret_key, auth.region, request_timeout=auth.request_timeout)

    @property
    def region(self) -> str:
        return self._region

    def in_region(self, region: str) -> TencentCloud:
        return TencentCloud(
            self._secret_id,
            self._secret_key,
            region,
            request_timeout=self._request_timeout,
        )

    @cached_property
    def _cvm(self) -> cvm_client.CvmClient:
        cred = credential.Credential(self._secret_id, self._secret_key)
        profile = ClientProfile(httpProfile=HttpProfile(reqTimeout=self._request_timeout))
        return cvm_client.CvmClient(cred, self._region, profile)

    def _call(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        request = getattr(models, f"{action}Request")()
        request.from_json_string(json.dumps(params))
        log.trace("{action} in {region}: {params}", action=action, region=self._region, params=params)
        try:
            response = getattr(self._cvm, action)(request)
        except TencentCloudSDKException as e:
            raise CloudAPIError(
                action,
                e.get_code(),
                e.get_message(),
                request_id=e.get_request_id(),
            ) from e
        return json.loads(response.to_json_string())

    # =========================================================================
    # Images
    # =========================================================================

    def describe_images(
        self,
        *,
        image_ids: Sequence[str] = (),
        filters: Filters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> ImagePage:
        params: dict[str, Any] = {}
        if image_ids:
            params["ImageIds"] = list(image_ids)
        if filters:
            params["Filters"] = [{"Name": k, "Values": list(v)} for k, v in filters.items()]
        if offset:
            params["Offset"] = offset
        if limit is not None:
            params["Limit"] = limit

        resp = self._call("DescribeImages", params)
        images = tuple(parse_image(raw) for raw in resp.get("ImageSet") or ())
        return ImagePage(images=images, total_count=resp.get("TotalCount") or 0)

    def create_image(self, instance_id: str, name: str, description: str = "") -> str | None:
        params: dict[str, Any] = {"InstanceId": instance_id, "ImageName": name}
        if description:
            params["ImageDescription"] = description
        resp = self._call("CreateImage", params)
        return resp.get("ImageId")

    def delete_images(self, image_ids: Sequence[str]) -> None:
        self._call("DeleteImages", {"ImageIds": list(image_ids)})

    def sync_images(self, image_ids: Sequence[str], regions: Sequence[str]) -> None:
        self._call(
            "SyncImages",
            {"ImageIds": list(image_ids), "DestinationRegions": list(regions)},
        )

    # =========================================================================
    # Instances
    # =========================================================================

    def describe_instances(self, instance_ids: Sequence[str]) -> list[Instance]:
        resp = self._call("DescribeInstances", {"InstanceIds": list(instance_ids)})
        return [parse_instance(raw) for raw in resp.get("InstanceSet") or ()]

    def run_instances(self, request: LaunchRequest) -> list[str]:
        resp = self._call("RunInstances", launch_params(request))
        return list(resp.get("InstanceIdSet") or ())

    def stop_instances(self, instance_ids: Sequence[str]) -> None:
        self._call("StopInstances", {"InstanceIds": list(instance_ids)})

    def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        self._call("TerminateInstances", {"InstanceIds": list(instance_ids)})

    # =========================================================================
    # Key pairs
    # =========================================================================

    def create_key_pair(self, name: str, project_id: int = 0) -> KeyPair:
        resp = self._call("CreateKeyPair", {"KeyName": name, "ProjectId": project_id})
        raw = resp.get("KeyPair") or {}
        return KeyPair(
            key_id=raw.get("KeyId") or "",
            name=raw.get("KeyName") or name,
            private_key=raw.get("PrivateKey") or "",
        )

    def delete_key_pairs(self, key_ids: Sequence[str]) -> None:
        self._call("DeleteKeyPairs", {"KeyIds": list(key_ids)})

    def disassociate_key_pairs(
        self,
        instance_ids: Sequence[str],
        key_ids: Sequence[str],
        *,
        force_stop: bool = True,
    ) -> None:
        self._call(
            "DisassociateInstancesKeyPairs",
            {
                "InstanceIds": list(instance_ids),
                "KeyIds": list(key_ids),
                "ForceStop": force_stop,
            },
        )
