"""
BaseEhrAdapter — 所有外部电子病历后端的抽象基类。

新增一个后端只需：
1. 继承 BaseEhrAdapter，声明 provider
2. 实现下面 6 个方法
3. 在 factory.py 的 _build_registry() 注册一行

同步逻辑（sync.py）只依赖这里的接口，不判断具体是哪种后端。

约定：读操作（get_patient / search_patients / get_karte_list）遇到
网络错误或解析失败返回 None / []；写操作失败抛 EhrTransportError。
"""

from abc import ABC, abstractmethod

from .types import ConnectionResult, EhrKarte, EhrPatient


class BaseEhrAdapter(ABC):

    # 与 factory 注册键、EhrPatientMapping.provider 一致
    provider: str = ""

    @abstractmethod
    def test_connection(self) -> ConnectionResult:
        """连接测试。失败信息原样放进 message，方便管理员排查。"""

    @abstractmethod
    def get_patient(self, external_id: str) -> EhrPatient | None:
        ...

    @abstractmethod
    def search_patients(self, name: str = "", tel: str = "", birthday: str = "") -> list[EhrPatient]:
        ...

    @abstractmethod
    def push_patient(self, patient: EhrPatient) -> str:
        """新建或更新患者，返回外部 ID。"""

    @abstractmethod
    def get_karte_list(self, patient_external_id: str) -> list[EhrKarte]:
        ...

    @abstractmethod
    def push_karte(self, karte: EhrKarte) -> None:
        ...
